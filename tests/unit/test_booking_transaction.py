"""
Unit tests for booking_transaction.py - Lesson lifecycle transaction handler.

Tests coverage:
- book(): success path, DB-first commit, calendar mirror and confirmation
- Validation failures: lead time, duration, horizon, naive datetimes
- Slot conflicts and concurrent bookings of the same window
- Calendar failure leaves the lesson booked with sync_status=error
- cancel(): late-cancellation fee, calendar delete, counters
- reschedule(): lineage, no fee, limit
- confirm() / complete() / mark_no_show() transitions
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from database.models import (
    BookingMethod,
    CalendarSyncStatus,
    CancellationActor,
    LessonStatus,
    NotificationStatus,
    NotificationType,
)
from scheduling.errors import (
    BookingValidationError,
    InvalidTransitionError,
    LessonNotFoundError,
    RescheduleLimitError,
    SlotUnavailableError,
    StudentNotFoundError,
)
from tests.factories import MONDAY, NOW, THURSDAY, WEDNESDAY, at


# ============================================================================
# book()
# ============================================================================


class TestBookSuccess:
    """Happy path of the DB-first booking flow."""

    @pytest.mark.asyncio
    async def test_booking_commits_lesson_and_confirmation(self, services, student, db):
        lesson = await services.booking.book(
            student.id, at(WEDNESDAY, 14), 60, topic="Algebra", notes="Chapter 3"
        )

        stored = await db.lesson(lesson.id)
        assert stored.status == LessonStatus.SCHEDULED
        assert stored.start_time == at(WEDNESDAY, 14)
        assert stored.end_time == at(WEDNESDAY, 15)
        assert stored.price == Decimal("150.00")
        assert stored.booking_method == BookingMethod.DIRECT
        assert stored.topic == "Algebra"
        assert stored.confirmation_sent is True

        confirmations = await db.notifications(NotificationType.BOOKING_CONFIRMATION)
        assert len(confirmations) == 1
        assert confirmations[0].status == NotificationStatus.PENDING
        assert confirmations[0].lesson_id == lesson.id
        assert confirmations[0].recipient == student.chat_id

        assert (await db.student(student.id)).total_lessons_booked == 1

    @pytest.mark.asyncio
    async def test_calendar_event_is_created_after_commit(self, services, student, calendar, db):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        stored = await db.lesson(lesson.id)
        assert stored.calendar_sync_status == CalendarSyncStatus.SYNCED
        assert stored.calendar_event_id in calendar.events
        event = calendar.events[stored.calendar_event_id]
        assert event.lesson_id == lesson.id
        assert event.summary == f"Lesson: {student.name}"

    @pytest.mark.asyncio
    async def test_default_duration_is_used(self, services, student):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 10))

        assert lesson.duration_minutes == 60

    @pytest.mark.asyncio
    async def test_back_to_back_lessons_are_allowed(self, services, make_student):
        first = await make_student("Avi")
        second = await make_student("Noa")

        await services.booking.book(first.id, at(WEDNESDAY, 14), 60)
        lesson = await services.booking.book(second.id, at(WEDNESDAY, 15), 60)

        assert lesson.status == LessonStatus.SCHEDULED


class TestCalendarFailure:
    """The calendar is a mirror: its failures never undo a booking."""

    @pytest.mark.asyncio
    async def test_calendar_failure_keeps_lesson_with_error_status(
        self, services, student, calendar, db
    ):
        calendar.fail_create = True

        lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        stored = await db.lesson(lesson.id)
        assert stored.status == LessonStatus.SCHEDULED
        assert stored.calendar_sync_status == CalendarSyncStatus.ERROR
        assert stored.calendar_event_id is None
        assert len(await db.notifications(NotificationType.BOOKING_CONFIRMATION)) == 1


class TestBookValidation:
    """Requests that break booking policy."""

    @pytest.mark.asyncio
    async def test_inside_lead_time_is_rejected(self, services, student, db):
        with pytest.raises(BookingValidationError) as exc_info:
            await services.booking.book(student.id, NOW + timedelta(minutes=15), 60)

        assert exc_info.value.details["conflict_type"] == "lead_time"
        assert await db.lessons() == []

    @pytest.mark.asyncio
    async def test_duration_out_of_bounds_is_rejected(self, services, student):
        with pytest.raises(BookingValidationError):
            await services.booking.book(student.id, at(WEDNESDAY, 10), 15)
        with pytest.raises(BookingValidationError):
            await services.booking.book(student.id, at(WEDNESDAY, 10), 150)

    @pytest.mark.asyncio
    async def test_outside_availability_is_rejected(self, services, student):
        with pytest.raises(BookingValidationError) as exc_info:
            await services.booking.book(student.id, at(WEDNESDAY, 17, 30), 60)

        assert exc_info.value.error_code == "BOOKING_INVALID"

    @pytest.mark.asyncio
    async def test_naive_datetime_is_rejected(self, services, student):
        naive = at(WEDNESDAY, 14).replace(tzinfo=None)

        with pytest.raises(BookingValidationError):
            await services.booking.book(student.id, naive, 60)

    @pytest.mark.asyncio
    async def test_unknown_student_is_rejected(self, services):
        with pytest.raises(StudentNotFoundError):
            await services.booking.book(uuid4(), at(WEDNESDAY, 14), 60)


class TestSlotConflicts:
    """Exclusivity of the teacher's time."""

    @pytest.mark.asyncio
    async def test_overlapping_booking_is_rejected(self, services, make_student, db):
        first = await make_student("Avi")
        second = await make_student("Noa")
        await services.booking.book(first.id, at(WEDNESDAY, 14), 60)

        with pytest.raises(SlotUnavailableError) as exc_info:
            await services.booking.book(second.id, at(WEDNESDAY, 14, 30), 60)

        assert exc_info.value.details["conflict_type"] == "lesson"
        assert len(await db.lessons()) == 1

    @pytest.mark.asyncio
    async def test_blocked_time_is_rejected(self, services, student):
        await services.availability.block_time(at(WEDNESDAY, 14), at(WEDNESDAY, 16))

        with pytest.raises(SlotUnavailableError):
            await services.booking.book(student.id, at(WEDNESDAY, 15), 60)

    @pytest.mark.asyncio
    async def test_concurrent_bookings_of_one_slot_yield_one_lesson(
        self, services, make_student, db
    ):
        first = await make_student("Avi")
        second = await make_student("Noa")

        results = await asyncio.gather(
            services.booking.book(first.id, at(WEDNESDAY, 11), 60),
            services.booking.book(second.id, at(WEDNESDAY, 11), 60),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], SlotUnavailableError)
        assert len(await db.lessons()) == 1


# ============================================================================
# cancel()
# ============================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_early_student_cancellation_has_no_fee(self, services, student, calendar, db):
        lesson = await services.booking.book(student.id, at(THURSDAY, 14), 60)
        event_id = (await db.lesson(lesson.id)).calendar_event_id

        await services.booking.cancel(lesson.id, reason="Sick")

        stored = await db.lesson(lesson.id)
        assert stored.status == LessonStatus.CANCELLED_BY_STUDENT
        assert stored.cancelled_by == CancellationActor.STUDENT
        assert stored.cancellation_reason == "Sick"
        assert stored.cancellation_fee is None
        assert calendar.deleted == [event_id]

        refreshed = await db.student(student.id)
        assert refreshed.total_lessons_cancelled == 1
        assert refreshed.payment_debt == Decimal("0.00")
        assert len(await db.notifications(NotificationType.LESSON_CANCELLATION)) == 1

    @pytest.mark.asyncio
    async def test_late_student_cancellation_adds_debt(self, services, student, db):
        lesson = await services.booking.book(student.id, at(MONDAY, 12), 60)

        await services.booking.cancel(lesson.id)

        stored = await db.lesson(lesson.id)
        assert stored.cancellation_fee == Decimal("150.00")
        assert (await db.student(student.id)).payment_debt == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_late_teacher_cancellation_has_no_fee(self, services, student, db):
        lesson = await services.booking.book(student.id, at(MONDAY, 12), 60)

        await services.booking.cancel(lesson.id, actor=CancellationActor.TEACHER)

        stored = await db.lesson(lesson.id)
        assert stored.status == LessonStatus.CANCELLED_BY_TEACHER
        assert stored.cancellation_fee is None
        assert (await db.student(student.id)).payment_debt == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_cancelled_slot_becomes_bookable_again(self, services, make_student):
        first = await make_student("Avi")
        second = await make_student("Noa")
        lesson = await services.booking.book(first.id, at(WEDNESDAY, 14), 60)

        await services.booking.cancel(lesson.id)
        rebooked = await services.booking.book(second.id, at(WEDNESDAY, 14), 60)

        assert rebooked.status == LessonStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_cancelling_twice_is_rejected(self, services, student):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)
        await services.booking.cancel(lesson.id)

        with pytest.raises(InvalidTransitionError):
            await services.booking.cancel(lesson.id)

    @pytest.mark.asyncio
    async def test_unknown_lesson_is_rejected(self, services):
        with pytest.raises(LessonNotFoundError):
            await services.booking.cancel(uuid4())


# ============================================================================
# reschedule()
# ============================================================================


class TestReschedule:
    @pytest.mark.asyncio
    async def test_reschedule_creates_linked_lesson(self, services, student, calendar, db):
        original = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        moved = await services.booking.reschedule(original.id, at(THURSDAY, 11))

        new = await db.lesson(moved.id)
        old = await db.lesson(original.id)
        assert new.original_lesson_id == original.id
        assert new.reschedule_count == 1
        assert new.is_rescheduled is True
        assert new.booking_method == BookingMethod.RESCHEDULE
        assert new.calendar_sync_status == CalendarSyncStatus.SYNCED
        assert old.status == LessonStatus.CANCELLED_BY_STUDENT
        assert old.cancellation_reason == "Rescheduled"
        assert old.cancellation_fee is None
        assert old.calendar_event_id in calendar.deleted

        refreshed = await db.student(student.id)
        assert refreshed.total_lessons_cancelled == 0
        assert len(await db.notifications(NotificationType.LESSON_RESCHEDULED)) == 1
        assert await db.notifications(NotificationType.LESSON_CANCELLATION) == []

    @pytest.mark.asyncio
    async def test_reschedule_may_overlap_its_own_original(self, services, student):
        original = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        moved = await services.booking.reschedule(original.id, at(WEDNESDAY, 14, 30))

        assert moved.start_time == at(WEDNESDAY, 14, 30)

    @pytest.mark.asyncio
    async def test_late_reschedule_has_no_fee(self, services, student, db):
        original = await services.booking.book(student.id, at(MONDAY, 12), 60)

        await services.booking.reschedule(original.id, at(WEDNESDAY, 12))

        assert (await db.student(student.id)).payment_debt == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_reschedule_into_taken_slot_is_rejected(self, services, make_student, db):
        first = await make_student("Avi")
        second = await make_student("Noa")
        await services.booking.book(first.id, at(WEDNESDAY, 10), 60)
        lesson = await services.booking.book(second.id, at(WEDNESDAY, 14), 60)

        with pytest.raises(SlotUnavailableError):
            await services.booking.reschedule(lesson.id, at(WEDNESDAY, 10, 30))

        assert (await db.lesson(lesson.id)).status == LessonStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_reschedule_limit(self, services, student, settings):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 10), 60)
        for hour in (11, 12, 13):
            lesson = await services.booking.reschedule(lesson.id, at(WEDNESDAY, hour))

        assert lesson.reschedule_count == settings.MAX_RESCHEDULES
        with pytest.raises(RescheduleLimitError):
            await services.booking.reschedule(lesson.id, at(WEDNESDAY, 15))


# ============================================================================
# Other transitions
# ============================================================================


class TestLifecycleTransitions:
    @pytest.mark.asyncio
    async def test_confirm_then_complete(self, services, student, db, clock):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        await services.booking.confirm(lesson.id)
        await services.booking.complete(lesson.id, teacher_notes="Good progress")

        stored = await db.lesson(lesson.id)
        assert stored.status == LessonStatus.COMPLETED
        assert stored.teacher_notes == "Good progress"
        assert stored.completed_at == clock.now()
        assert (await db.student(student.id)).total_lessons_completed == 1

    @pytest.mark.asyncio
    async def test_confirm_requires_scheduled(self, services, student):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)
        await services.booking.confirm(lesson.id)

        with pytest.raises(InvalidTransitionError):
            await services.booking.confirm(lesson.id)

    @pytest.mark.asyncio
    async def test_no_show_is_terminal(self, services, student, db):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        await services.booking.mark_no_show(lesson.id)

        assert (await db.lesson(lesson.id)).status == LessonStatus.NO_SHOW
        with pytest.raises(InvalidTransitionError):
            await services.booking.complete(lesson.id)
        with pytest.raises(InvalidTransitionError):
            await services.booking.cancel(lesson.id)
