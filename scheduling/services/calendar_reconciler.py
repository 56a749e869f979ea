"""
Calendar Reconciler - keep lessons in line with the calendar of record.

Two passes, both safe to run any number of times:

1. sync_pending(): lessons whose calendar push failed or never happened
   (calendar_sync_status pending/error) get their event created.
2. reconcile(): events in the forward window (cancelled ones included) are
   read back; each event that references a local lesson is handed to
   BookingTransaction.apply_external_change, which cancels or moves the
   lesson and notifies the student only when something actually changed.

Events that reference no local lesson are ignored, as are duplicates that
point at a lesson already linked to another event. A failure on one event
is logged and the pass continues with the next one.
"""

import logging
from datetime import timedelta

from database.models import CalendarSyncStatus, Lesson
from database.repository import SchedulingRepository
from scheduling.ports import CalendarEvent, CalendarPort, Clock
from scheduling.transactions.booking_transaction import BookingTransaction
from shared.config import Settings
from shared.resilient_api import with_timeout

logger = logging.getLogger(__name__)


class CalendarReconciler:
    def __init__(
        self,
        repository: SchedulingRepository,
        booking: BookingTransaction,
        calendar: CalendarPort,
        clock: Clock,
        settings: Settings,
    ):
        self.repository = repository
        self.booking = booking
        self.calendar = calendar
        self.clock = clock
        self.settings = settings

    async def sync_pending(self) -> dict[str, int]:
        """Retry calendar creation for upcoming lessons that are not synced."""
        stats = {"attempted": 0, "synced": 0, "failed": 0}
        now = self.clock.now()

        async with self.repository.session() as session:
            lessons = await self.repository.list_lessons_needing_sync(session, now)
            pending = []
            for lesson in lessons:
                student = await self.repository.get_student(session, lesson.student_id)
                if student is not None:
                    pending.append((lesson, student))

        for lesson, student in pending:
            stats["attempted"] += 1
            if await self.booking.push_to_calendar(lesson, student):
                stats["synced"] += 1
            else:
                stats["failed"] += 1

        if stats["attempted"]:
            logger.info(
                f"Pending-sync sweep: {stats['synced']}/{stats['attempted']} lessons pushed"
            )
        return stats

    async def _find_lesson(self, event: CalendarEvent) -> Lesson | None:
        """
        The lesson this event belongs to, or None when it belongs to none.

        Events are matched by their id first. The lesson_id back-reference is
        only trusted for a lesson that has no event yet (its push failed after
        the event was created); the event id is then adopted. An event whose
        lesson already points at a different event is a stray duplicate.
        """
        async with self.repository.session() as session:
            lesson = await self.repository.get_lesson_by_event_id(session, event.event_id)
            if lesson is not None or event.lesson_id is None:
                return lesson

            lesson = await self.repository.get_lesson(session, event.lesson_id)
            if lesson is None:
                return None
            if lesson.calendar_event_id:
                logger.warning(
                    f"Calendar event {event.event_id} references lesson {lesson.id}, "
                    f"which is linked to event {lesson.calendar_event_id}; ignoring",
                    extra={"event_id": event.event_id, "lesson_id": lesson.id},
                )
                return None

            await self.repository.update_lesson_sync(
                session,
                lesson.id,
                CalendarSyncStatus.SYNCED,
                event_id=event.event_id,
                synced_at=self.clock.now(),
            )
            await session.commit()
            logger.info(
                f"Adopted calendar event {event.event_id} for lesson {lesson.id}",
                extra={"event_id": event.event_id, "lesson_id": lesson.id},
            )
            return lesson

    async def reconcile(self) -> dict[str, int]:
        """
        Apply out-of-band calendar changes to local lessons.

        Returns:
            Stats dict: events, matched, cancelled, rescheduled, unchanged,
            ignored, errors
        """
        stats = {
            "events": 0,
            "matched": 0,
            "cancelled": 0,
            "rescheduled": 0,
            "unchanged": 0,
            "ignored": 0,
            "errors": 0,
        }
        now = self.clock.now()
        window_end = now + timedelta(days=self.settings.RECONCILE_WINDOW_DAYS)

        events = await with_timeout(
            self.calendar.list_events(now, window_end, include_cancelled=True),
            self.settings.CALENDAR_TIMEOUT_SECONDS,
            "calendar.list_events",
        )
        stats["events"] = len(events)

        for event in events:
            try:
                lesson = await self._find_lesson(event)
                if lesson is None:
                    stats["ignored"] += 1
                    continue

                stats["matched"] += 1
                outcome = await self.booking.apply_external_change(lesson.id, event)
                stats[outcome] += 1

            except Exception as e:
                stats["errors"] += 1
                logger.error(
                    f"Failed to reconcile calendar event {event.event_id}: {e}",
                    extra={"event_id": event.event_id},
                    exc_info=True,
                )

        logger.info(
            f"Reconciliation complete: {stats['events']} events, "
            f"{stats['cancelled']} cancelled, {stats['rescheduled']} rescheduled, "
            f"{stats['errors']} errors"
        )
        return stats

    async def run(self) -> dict[str, dict[str, int]]:
        """Pending-sync sweep followed by a reconciliation pass."""
        return {"sync": await self.sync_pending(), "reconcile": await self.reconcile()}
