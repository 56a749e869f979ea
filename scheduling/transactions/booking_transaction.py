"""
Booking Transaction Handler (DB-first).

This module owns every state change of a Lesson:
- book(): check + persist under an exclusive critical section
- cancel() / reschedule() / complete() / mark_no_show() / confirm()
- apply_external_change(): out-of-band edits reported by the calendar of record

Architecture:
- The database is committed FIRST and is the source of truth
- The calendar of record is a mirror, pushed AFTER commit under a timeout
- Calendar failures never roll back a booking; the lesson is left with
  calendar_sync_status=error and CalendarReconciler's sync sweep retries it

Exclusivity: the conflict check and the insert run in one transaction,
SERIALIZABLE on PostgreSQL, and inside an asyncio.Lock so two coroutines in
this process cannot interleave between check and insert. A serialization
or integrity failure at commit is reported as SlotUnavailableError.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    ACTIVE_LESSON_STATUSES,
    TERMINAL_WAITLIST_STATUSES,
    BookingMethod,
    CalendarSyncStatus,
    CancellationActor,
    Lesson,
    LessonStatus,
    NotificationType,
    Student,
    WaitlistEntry,
)
from database.repository import SchedulingRepository
from scheduling.errors import (
    BookingValidationError,
    InvalidTransitionError,
    LessonNotFoundError,
    RescheduleLimitError,
    SlotUnavailableError,
    StudentNotFoundError,
    WaitlistEntryNotFoundError,
)
from scheduling.ports import CalendarEvent, CalendarEventDetails, CalendarPort, Clock
from scheduling.services import notification_templates as templates
from scheduling.services.availability_service import AvailabilityChecker
from scheduling.services.notification_service import NotificationDispatcher
from scheduling.services.waitlist_service import WaitlistManager
from scheduling.validators.conflict_detector import ConflictDetector
from shared.config import Settings
from shared.resilient_api import with_timeout

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATEs that mean "another transaction won the race"
SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"

EXTERNAL_CANCELLATION_REASON = "Cancelled in the teacher's calendar"
RESCHEDULE_REASON = "Rescheduled"


def _lost_race(error: DBAPIError) -> bool:
    if isinstance(error, IntegrityError):
        return True
    code = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    return code in (SERIALIZATION_FAILURE, DEADLOCK_DETECTED)


class BookingTransaction:
    """
    Transaction handler for the lesson lifecycle.

    Constructed once at startup (see scheduling.container) and shared by
    every caller; the booking lock is per instance.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        availability: AvailabilityChecker,
        conflict_detector: ConflictDetector,
        waitlist: WaitlistManager,
        dispatcher: NotificationDispatcher,
        calendar: CalendarPort,
        clock: Clock,
        settings: Settings,
    ):
        self.repository = repository
        self.availability = availability
        self.conflicts = conflict_detector
        self.waitlist = waitlist
        self.dispatcher = dispatcher
        self.calendar = calendar
        self.clock = clock
        self.settings = settings
        self.timezone = ZoneInfo(settings.TIMEZONE)
        self._booking_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_lesson(self, session: AsyncSession, lesson_id: UUID) -> Lesson:
        lesson = await self.repository.get_lesson(session, lesson_id)
        if lesson is None:
            raise LessonNotFoundError(lesson_id)
        return lesson

    async def _load_student(self, session: AsyncSession, student_id: UUID) -> Student:
        student = await self.repository.get_student(session, student_id)
        if student is None:
            raise StudentNotFoundError(student_id)
        return student

    async def _open_waitlist_entry(
        self, session: AsyncSession, entry_id: UUID, student_id: UUID
    ) -> WaitlistEntry | None:
        """
        The waitlist entry a booking fulfills, or None if it can no longer be.

        An entry that expired or closed while the student was booking does
        not block the booking; the lesson is then booked directly.
        """
        entry = await self.repository.get_waitlist_entry(session, entry_id)
        if entry is None:
            raise WaitlistEntryNotFoundError(entry_id)
        if entry.student_id != student_id:
            raise BookingValidationError(
                "Waitlist entry belongs to another student",
                {"waitlist_entry_id": str(entry_id)},
            )
        if entry.status in TERMINAL_WAITLIST_STATUSES:
            logger.warning(
                f"Waitlist entry is {entry.status.value}, booking without fulfilling it",
                extra={"waitlist_entry_id": entry_id, "student_id": student_id},
            )
            return None
        return entry

    def _validate_duration(self, duration_minutes: int) -> None:
        if not (
            self.settings.MIN_LESSON_DURATION
            <= duration_minutes
            <= self.settings.MAX_LESSON_DURATION
        ):
            raise BookingValidationError(
                f"Lesson duration must be between {self.settings.MIN_LESSON_DURATION} "
                f"and {self.settings.MAX_LESSON_DURATION} minutes",
                {"duration_minutes": duration_minutes},
            )

    async def _claim_slot(
        self,
        session: AsyncSession,
        start_time: datetime,
        duration_minutes: int,
        exclude_lesson_id: UUID | None = None,
    ) -> Decimal:
        """Re-check the slot inside the transaction; returns its price."""
        check = await self.availability.is_slot_available(
            start_time, duration_minutes, session=session, exclude_lesson_id=exclude_lesson_id
        )
        if check.available:
            return check.price

        details = {
            "start_time": start_time.isoformat(),
            "duration_minutes": duration_minutes,
            "conflict_type": check.conflict_type,
        }
        if check.conflict_type in ("lesson", "blocked"):
            raise SlotUnavailableError(check.details or "Slot is no longer available", details)
        raise BookingValidationError(check.details or "Slot cannot be booked", details)

    def _event_details(self, lesson: Lesson, student: Student) -> CalendarEventDetails:
        summary = f"Lesson: {student.name}"
        if lesson.topic:
            summary = f"{summary} - {lesson.topic}"
        return CalendarEventDetails(
            summary=summary,
            start=lesson.start_time,
            end=lesson.end_time,
            description=(
                f"Student: {student.name}\n"
                f"Duration: {lesson.duration_minutes} min\n"
                f"Lesson ID: {lesson.id}"
            ),
            lesson_id=lesson.id,
            timezone=self.settings.TIMEZONE,
        )

    # ------------------------------------------------------------------
    # Calendar mirror
    # ------------------------------------------------------------------

    async def push_to_calendar(self, lesson: Lesson, student: Student) -> bool:
        """
        Create the calendar event for a committed lesson.

        Failures (including timeouts and an open circuit) are logged and
        recorded as calendar_sync_status=error; they never propagate.

        Returns:
            True if the event was created
        """
        extra = {"lesson_id": lesson.id, "student_id": student.id}
        try:
            event_id = await with_timeout(
                self.calendar.create_event(self._event_details(lesson, student)),
                self.settings.CALENDAR_TIMEOUT_SECONDS,
                "calendar.create_event",
            )
        except Exception as e:
            logger.warning(
                f"Calendar event creation failed, lesson kept (sync_status=error): {e}",
                extra=extra,
            )
            status, event_id, synced_at = CalendarSyncStatus.ERROR, None, None
        else:
            status, synced_at = CalendarSyncStatus.SYNCED, self.clock.now()
            logger.info(f"Calendar event {event_id} created", extra=extra)

        async with self.repository.session() as session:
            await self.repository.update_lesson_sync(
                session, lesson.id, status, event_id=event_id, synced_at=synced_at
            )
            await session.commit()

        lesson.calendar_sync_status = status
        if event_id:
            lesson.calendar_event_id = event_id
            lesson.calendar_synced_at = synced_at
        return status == CalendarSyncStatus.SYNCED

    async def _delete_calendar_event(self, lesson: Lesson) -> None:
        if not lesson.calendar_event_id:
            return
        try:
            await with_timeout(
                self.calendar.delete_event(lesson.calendar_event_id),
                self.settings.CALENDAR_TIMEOUT_SECONDS,
                "calendar.delete_event",
            )
            logger.info(
                f"Calendar event {lesson.calendar_event_id} deleted",
                extra={"lesson_id": lesson.id},
            )
        except Exception as e:
            logger.warning(
                f"Failed to delete calendar event {lesson.calendar_event_id}: {e}",
                extra={"lesson_id": lesson.id},
            )

    async def _offer_to_waitlist(self, start: datetime, end: datetime) -> None:
        try:
            await self.waitlist.match_and_notify(start, end)
        except Exception as e:
            logger.error(
                f"Waitlist matching failed for freed window {start.isoformat()}: {e}",
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Book
    # ------------------------------------------------------------------

    async def book(
        self,
        student_id: UUID,
        start_time: datetime,
        duration_minutes: int | None = None,
        *,
        topic: str | None = None,
        notes: str | None = None,
        waitlist_entry_id: UUID | None = None,
    ) -> Lesson:
        """
        Book a lesson.

        Args:
            student_id: Student UUID
            start_time: Lesson start (timezone-aware)
            duration_minutes: Length (default: settings.DEFAULT_LESSON_DURATION)
            topic: Optional lesson topic
            notes: Optional student notes
            waitlist_entry_id: Waitlist entry this booking fulfills, if any; an
                entry that already expired or closed is left as it is

        Returns:
            The committed Lesson (status=scheduled)

        Raises:
            SlotUnavailableError: The window is taken (re-run availability)
            BookingValidationError: Lead time, duration or horizon violated, or
                the waitlist entry belongs to another student
            StudentNotFoundError: Unknown student
            WaitlistEntryNotFoundError: Unknown waitlist entry
        """
        if start_time.tzinfo is None:
            raise BookingValidationError("start_time must be timezone-aware")

        duration = duration_minutes or self.settings.DEFAULT_LESSON_DURATION
        self._validate_duration(duration)
        end_time = start_time + timedelta(minutes=duration)
        trace_id = f"{student_id}_{start_time.isoformat()}"

        logger.info(
            f"[{trace_id}] Starting booking transaction",
            extra={"student_id": student_id},
        )

        async with self._booking_lock:
            async with self.repository.session() as session:
                try:
                    await self.repository.begin_serializable(session)

                    student = await self._load_student(session, student_id)
                    entry = None
                    if waitlist_entry_id:
                        entry = await self._open_waitlist_entry(
                            session, waitlist_entry_id, student.id
                        )
                    price = await self._claim_slot(session, start_time, duration)

                    lesson = Lesson(
                        student_id=student.id,
                        start_time=start_time,
                        end_time=end_time,
                        duration_minutes=duration,
                        status=LessonStatus.SCHEDULED,
                        booking_method=(
                            BookingMethod.WAITLIST_PROMOTION
                            if entry is not None
                            else BookingMethod.DIRECT
                        ),
                        calendar_sync_status=CalendarSyncStatus.PENDING,
                        waitlist_entry_id=entry.id if entry is not None else None,
                        price=price,
                        currency=self.settings.CURRENCY,
                        topic=topic,
                        notes=notes,
                        reschedule_count=0,
                        is_rescheduled=False,
                        reminder_sent=False,
                        confirmation_sent=False,
                    )
                    session.add(lesson)
                    student.total_lessons_booked += 1
                    await session.flush()

                    if entry is not None:
                        await self.waitlist.fulfill(entry.id, lesson.id, session=session)

                    await self.dispatcher.schedule(
                        student,
                        NotificationType.BOOKING_CONFIRMATION,
                        templates.booking_confirmation(student, lesson, self.timezone),
                        lesson_id=lesson.id,
                        session=session,
                    )
                    lesson.confirmation_sent = True

                    await session.commit()

                except DBAPIError as e:
                    await session.rollback()
                    if _lost_race(e):
                        logger.warning(f"[{trace_id}] Booking lost a race at commit: {e}")
                        raise SlotUnavailableError(
                            "Slot was taken by a concurrent booking",
                            {"start_time": start_time.isoformat()},
                        ) from e
                    raise
                except Exception:
                    await session.rollback()
                    raise

        logger.info(
            f"[{trace_id}] Lesson committed to database (DB-first)",
            extra={"lesson_id": lesson.id, "student_id": student.id},
        )

        await self.push_to_calendar(lesson, student)
        return lesson

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def _apply_cancellation(
        self,
        session: AsyncSession,
        lesson: Lesson,
        student: Student,
        actor: CancellationActor,
        reason: str | None,
        *,
        count_cancellation: bool = True,
        apply_fee: bool = True,
    ) -> Decimal | None:
        """Mutate `lesson` and `student` for a cancellation; returns the fee, if any."""
        now = self.clock.now()

        lesson.status = (
            LessonStatus.CANCELLED_BY_STUDENT
            if actor == CancellationActor.STUDENT
            else LessonStatus.CANCELLED_BY_TEACHER
        )
        lesson.cancelled_at = now
        lesson.cancelled_by = actor
        lesson.cancellation_reason = reason

        if count_cancellation:
            student.total_lessons_cancelled += 1

        fee = None
        late = lesson.start_time - now < timedelta(hours=self.settings.CANCELLATION_WINDOW_HOURS)
        if apply_fee and actor == CancellationActor.STUDENT and late and lesson.price > 0:
            fee = lesson.price
            lesson.cancellation_fee = fee
            student.payment_debt = (student.payment_debt or Decimal("0.00")) + fee
            logger.info(
                f"Late cancellation fee {fee} {lesson.currency} added to student debt",
                extra={"lesson_id": lesson.id, "student_id": student.id},
            )

        await session.flush()
        return fee

    async def cancel(
        self,
        lesson_id: UUID,
        actor: CancellationActor = CancellationActor.STUDENT,
        reason: str | None = None,
    ) -> Lesson:
        """
        Cancel a scheduled or confirmed lesson.

        A student cancelling inside the cancellation window is charged the
        lesson price as debt. The calendar event is deleted after commit
        (failure logged), the freed window is offered to the waitlist and
        the student is notified.

        Raises:
            LessonNotFoundError: Unknown lesson
            InvalidTransitionError: Lesson is not scheduled/confirmed
        """
        async with self.repository.session() as session:
            lesson = await self._load_lesson(session, lesson_id)
            if not lesson.can_be_cancelled:
                raise InvalidTransitionError("lesson", lesson.status.value, f"cancelled_by_{actor.value}")

            student = await self._load_student(session, lesson.student_id)
            fee = await self._apply_cancellation(session, lesson, student, actor, reason)

            await self.dispatcher.schedule(
                student,
                NotificationType.LESSON_CANCELLATION,
                templates.lesson_cancellation(
                    student, lesson, self.timezone,
                    by_teacher=actor != CancellationActor.STUDENT,
                    fee=fee,
                ),
                lesson_id=lesson.id,
                session=session,
            )
            await session.commit()

        logger.info(
            f"Lesson cancelled by {actor.value}",
            extra={"lesson_id": lesson.id, "student_id": lesson.student_id},
        )

        await self._delete_calendar_event(lesson)
        await self._offer_to_waitlist(lesson.start_time, lesson.end_time)
        return lesson

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    async def reschedule(
        self,
        lesson_id: UUID,
        new_start_time: datetime,
        duration_minutes: int | None = None,
        actor: CancellationActor = CancellationActor.STUDENT,
    ) -> Lesson:
        """
        Move a lesson to a new slot.

        Creates a new lesson linked through original_lesson_id with
        reschedule_count + 1, then cancels the original (no fee, reason
        "Rescheduled"). One LESSON_RESCHEDULED notification is sent.

        Raises:
            RescheduleLimitError: The lesson was already moved MAX_RESCHEDULES times
            SlotUnavailableError / BookingValidationError: As for book()
        """
        if new_start_time.tzinfo is None:
            raise BookingValidationError("new_start_time must be timezone-aware")

        async with self._booking_lock:
            async with self.repository.session() as session:
                try:
                    await self.repository.begin_serializable(session)

                    original = await self._load_lesson(session, lesson_id)
                    if not original.can_be_cancelled:
                        raise InvalidTransitionError("lesson", original.status.value, "rescheduled")
                    if original.reschedule_count >= self.settings.MAX_RESCHEDULES:
                        raise RescheduleLimitError(original.id, self.settings.MAX_RESCHEDULES)

                    duration = duration_minutes or original.duration_minutes
                    self._validate_duration(duration)
                    student = await self._load_student(session, original.student_id)
                    price = await self._claim_slot(
                        session, new_start_time, duration, exclude_lesson_id=original.id
                    )

                    lesson = Lesson(
                        student_id=student.id,
                        start_time=new_start_time,
                        end_time=new_start_time + timedelta(minutes=duration),
                        duration_minutes=duration,
                        status=LessonStatus.SCHEDULED,
                        booking_method=BookingMethod.RESCHEDULE,
                        calendar_sync_status=CalendarSyncStatus.PENDING,
                        original_lesson_id=original.id,
                        reschedule_count=original.reschedule_count + 1,
                        is_rescheduled=True,
                        price=price,
                        currency=original.currency,
                        topic=original.topic,
                        notes=original.notes,
                        reminder_sent=False,
                        confirmation_sent=True,
                    )
                    session.add(lesson)
                    await session.flush()

                    await self._apply_cancellation(
                        session, original, student, actor, RESCHEDULE_REASON,
                        count_cancellation=False,
                        apply_fee=False,
                    )

                    await self.dispatcher.schedule(
                        student,
                        NotificationType.LESSON_RESCHEDULED,
                        templates.lesson_rescheduled(
                            student, lesson, original.start_time, self.timezone
                        ),
                        lesson_id=lesson.id,
                        session=session,
                    )
                    await session.commit()

                except DBAPIError as e:
                    await session.rollback()
                    if _lost_race(e):
                        raise SlotUnavailableError(
                            "Slot was taken by a concurrent booking",
                            {"start_time": new_start_time.isoformat()},
                        ) from e
                    raise
                except Exception:
                    await session.rollback()
                    raise

        logger.info(
            f"Lesson rescheduled to {new_start_time.isoformat()} "
            f"(reschedule {lesson.reschedule_count}/{self.settings.MAX_RESCHEDULES})",
            extra={"lesson_id": lesson.id, "student_id": student.id},
        )

        await self._delete_calendar_event(original)
        await self.push_to_calendar(lesson, student)
        await self._offer_to_waitlist(original.start_time, original.end_time)
        return lesson

    # ------------------------------------------------------------------
    # Other lifecycle transitions
    # ------------------------------------------------------------------

    async def _set_status(
        self,
        lesson_id: UUID,
        target: LessonStatus,
        allowed_from: tuple[LessonStatus, ...],
        **changes,
    ) -> Lesson:
        async with self.repository.session() as session:
            lesson = await self._load_lesson(session, lesson_id)
            if lesson.status not in allowed_from:
                raise InvalidTransitionError("lesson", lesson.status.value, target.value)

            lesson.status = target
            for field, value in changes.items():
                setattr(lesson, field, value)

            if target == LessonStatus.COMPLETED:
                student = await self._load_student(session, lesson.student_id)
                student.total_lessons_completed += 1

            await session.commit()

        logger.info(
            f"Lesson moved to {target.value}",
            extra={"lesson_id": lesson.id, "student_id": lesson.student_id},
        )
        return lesson

    async def confirm(self, lesson_id: UUID) -> Lesson:
        """Student confirmed attendance: scheduled -> confirmed."""
        return await self._set_status(
            lesson_id, LessonStatus.CONFIRMED, (LessonStatus.SCHEDULED,)
        )

    async def complete(self, lesson_id: UUID, teacher_notes: str | None = None) -> Lesson:
        changes = {"completed_at": self.clock.now()}
        if teacher_notes:
            changes["teacher_notes"] = teacher_notes
        return await self._set_status(
            lesson_id, LessonStatus.COMPLETED, ACTIVE_LESSON_STATUSES, **changes
        )

    async def mark_no_show(self, lesson_id: UUID) -> Lesson:
        return await self._set_status(lesson_id, LessonStatus.NO_SHOW, ACTIVE_LESSON_STATUSES)

    # ------------------------------------------------------------------
    # Out-of-band changes from the calendar of record
    # ------------------------------------------------------------------

    async def apply_external_change(self, lesson_id: UUID, event: CalendarEvent) -> str:
        """
        Bring a lesson in line with its calendar event.

        Returns:
            "cancelled" if the event was cancelled and the lesson was active,
            "rescheduled" if the event's times differ from the lesson's,
            "unchanged" otherwise (no writes, no notifications)
        """
        async with self.repository.session() as session:
            lesson = await self._load_lesson(session, lesson_id)

            if not lesson.is_active:
                return "unchanged"

            student = await self._load_student(session, lesson.student_id)

            if event.cancelled:
                await self._apply_cancellation(
                    session, lesson, student, CancellationActor.TEACHER,
                    EXTERNAL_CANCELLATION_REASON,
                    apply_fee=False,
                )
                await self.dispatcher.schedule(
                    student,
                    NotificationType.LESSON_CANCELLATION,
                    templates.lesson_cancellation(student, lesson, self.timezone, by_teacher=True),
                    lesson_id=lesson.id,
                    session=session,
                )
                await session.commit()
                logger.info(
                    f"Lesson cancelled from calendar event {event.event_id}",
                    extra={"lesson_id": lesson.id, "event_id": event.event_id},
                )
                await self._offer_to_waitlist(lesson.start_time, lesson.end_time)
                return "cancelled"

            if event.start is None or event.end is None:
                return "unchanged"
            if event.start == lesson.start_time and event.end == lesson.end_time:
                return "unchanged"
            if event.end <= event.start:
                logger.warning(
                    f"Ignoring calendar event {event.event_id} with non-positive duration",
                    extra={"lesson_id": lesson.id, "event_id": event.event_id},
                )
                return "unchanged"

            previous_start, previous_end = lesson.start_time, lesson.end_time
            lesson.start_time = event.start
            lesson.end_time = event.end
            lesson.duration_minutes = max(1, int((event.end - event.start).total_seconds() // 60))
            lesson.reminder_sent = False
            lesson.calendar_sync_status = CalendarSyncStatus.SYNCED
            lesson.calendar_synced_at = self.clock.now()
            await session.flush()

            overlaps = await self.conflicts.find_conflicts(
                session, lesson.start_time, lesson.end_time, exclude_lesson_id=lesson.id
            )
            if overlaps:
                # Reported by the integrity check as well; not repaired here
                logger.error(
                    f"Calendar move of lesson overlaps {len(overlaps)} active lesson(s): "
                    f"{[str(o.id) for o in overlaps]}",
                    extra={"lesson_id": lesson.id, "event_id": event.event_id},
                )

            await self.dispatcher.schedule(
                student,
                NotificationType.LESSON_RESCHEDULED,
                templates.lesson_rescheduled(student, lesson, previous_start, self.timezone),
                lesson_id=lesson.id,
                session=session,
            )
            await session.commit()

        logger.info(
            f"Lesson moved from calendar: {previous_start.isoformat()} -> {event.start.isoformat()}",
            extra={"lesson_id": lesson.id, "event_id": event.event_id},
        )
        await self._offer_to_waitlist(previous_start, previous_end)
        return "rescheduled"
