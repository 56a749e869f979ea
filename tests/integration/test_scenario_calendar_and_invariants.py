"""
End-to-end scenarios for calendar reconciliation and long-running
invariants.

Scenarios:
- An event cancelled in the teacher's calendar cancels the lesson once
  and enqueues exactly one cancellation notice, however often we reconcile
- A reconciliation pass with no outside change writes nothing
- A random mix of bookings, cancellations, reschedules and waitlist
  operations never leaves overlapping active lessons or gaps in the
  waitlist positions
"""

import random
from datetime import timedelta

import pytest
from sqlalchemy import select

from database.models import (
    CancellationActor,
    LessonStatus,
    NotificationType,
    WaitlistEntry,
    WaitlistStatus,
)
from scheduling.errors import (
    BookingValidationError,
    InvalidTransitionError,
    RescheduleLimitError,
    SlotUnavailableError,
)
from scheduling.services import WaitlistPreference
from tests.factories import MONDAY, WEDNESDAY, at


async def _assert_no_overlaps(db):
    active = [lesson for lesson in await db.lessons() if lesson.is_active]
    for i, first in enumerate(active):
        for second in active[i + 1:]:
            assert not (
                first.start_time < second.end_time and second.start_time < first.end_time
            ), f"lessons {first.id} and {second.id} overlap"


async def _assert_contiguous_positions(session_factory):
    async with session_factory() as session:
        result = await session.execute(
            select(WaitlistEntry.position).where(WaitlistEntry.status == WaitlistStatus.ACTIVE)
        )
        positions = sorted(result.scalars().all())
    assert positions == list(range(1, len(positions) + 1))


# ============================================================================
# External cancellation
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_external_cancellation_is_applied_once(services, student, calendar, db):
    lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)
    event_id = (await db.lesson(lesson.id)).calendar_event_id
    assert event_id is not None

    calendar.cancel_externally(event_id)

    first = await services.reconciler.reconcile()
    second = await services.reconciler.reconcile()

    assert first["cancelled"] == 1
    assert second["cancelled"] == 0
    assert second["unchanged"] == 1

    cancelled = await db.lesson(lesson.id)
    assert cancelled.status == LessonStatus.CANCELLED_BY_TEACHER
    assert cancelled.cancelled_by == CancellationActor.TEACHER
    assert cancelled.cancellation_fee is None

    notices = await db.notifications(NotificationType.LESSON_CANCELLATION)
    assert len(notices) == 1

    student_row = await db.student(student.id)
    assert student_row.payment_debt == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_quiet_reconciliation_writes_nothing(services, make_student, db):
    for hour, name in ((10, "Avi"), (12, "Noa"), (16, "Lior")):
        learner = await make_student(name)
        await services.booking.book(learner.id, at(WEDNESDAY, hour), 60)

    before = [(l.id, l.updated_at, l.status) for l in await db.lessons()]
    notifications_before = len(await db.notifications())

    stats = await services.reconciler.reconcile()

    assert stats["matched"] == 3
    assert stats["unchanged"] == 3
    assert [(l.id, l.updated_at, l.status) for l in await db.lessons()] == before
    assert len(await db.notifications()) == notifications_before


# ============================================================================
# Invariants under a random workload
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_random_workload_keeps_invariants(
    services, make_student, session_factory, clock, db
):
    rng = random.Random(20300107)
    students = [await make_student(name) for name in ("Avi", "Noa", "Lior", "Maya")]
    expected_failures = (
        SlotUnavailableError,
        BookingValidationError,
        RescheduleLimitError,
        InvalidTransitionError,
    )

    def random_start():
        day = MONDAY + timedelta(days=rng.randrange(1, 5))
        return at(day, rng.randrange(10, 18), rng.choice((0, 30)))

    for step in range(60):
        operation = rng.choice(("book", "book", "cancel", "reschedule", "enqueue", "leave"))
        active = [lesson for lesson in await db.lessons() if lesson.is_active]

        try:
            if operation == "book":
                await services.booking.book(
                    rng.choice(students).id, random_start(), rng.choice((30, 60, 90))
                )
            elif operation == "cancel" and active:
                await services.booking.cancel(rng.choice(active).id)
            elif operation == "reschedule" and active:
                await services.booking.reschedule(rng.choice(active).id, random_start())
            elif operation == "enqueue":
                await services.waitlist.enqueue(
                    rng.choice(students).id,
                    WaitlistPreference(preferred_days=[rng.randrange(0, 7)]),
                )
            elif operation == "leave":
                async with session_factory() as session:
                    result = await session.execute(
                        select(WaitlistEntry.id).where(
                            WaitlistEntry.status == WaitlistStatus.ACTIVE
                        )
                    )
                    waiting = list(result.scalars().all())
                if waiting:
                    await services.waitlist.cancel(rng.choice(waiting))
        except expected_failures:
            pass

        if step % 10 == 9:
            clock.advance(hours=1)
            await services.waitlist.expire_stale()

        await _assert_no_overlaps(db)
        await _assert_contiguous_positions(session_factory)

    async with session_factory() as session:
        assert await services.conflicts.find_overlapping_pairs(session) == []
