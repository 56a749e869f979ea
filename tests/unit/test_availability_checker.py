"""
Unit tests for availability_service.py - Bookable slots and single-slot checks.

Tests coverage:
- Default windows derived from business-hours settings
- Existing lessons and manual blocks removing candidate slots
- get_next_available_slots() day skipping and limit
- is_slot_available() check order and conflict types
- Pricing with the default rate and a per-window rate
"""

from datetime import time, timedelta
from decimal import Decimal

import pytest

from database.models import AvailabilityWindow, ScheduleType
from scheduling.errors import SlotUnavailableError
from tests.factories import NOW, TUESDAY, TZ, WEDNESDAY, at


async def _add_window(session_factory, **fields):
    values = {
        "schedule_type": ScheduleType.RECURRING,
        "start_time": time(10, 0),
        "end_time": time(18, 0),
        "is_available": True,
        "is_active": True,
        "min_lesson_duration": 30,
        "max_lesson_duration": 120,
        "buffer_after_minutes": 0,
        "max_advance_booking_days": 30,
    }
    values.update(fields)
    window = AvailabilityWindow(**values)
    async with session_factory() as session:
        session.add(window)
        await session.commit()
    return window


class TestGetAvailableSlots:
    """Slots for a single day."""

    @pytest.mark.asyncio
    async def test_default_business_hours_give_15_hourly_slots(self, services):
        slots = await services.availability.get_available_slots(WEDNESDAY, 60)

        assert len(slots) == 15
        assert slots[0].start == at(WEDNESDAY, 10)
        assert slots[-1].start == at(WEDNESDAY, 17)
        assert slots[0].price == Decimal("150.00")
        assert slots[0].currency == "ILS"
        assert slots[0].label == "Wednesday, 9 January 10:00-11:00"

    @pytest.mark.asyncio
    async def test_booked_lesson_removes_overlapping_starts(self, services, student):
        await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        slots = await services.availability.get_available_slots(WEDNESDAY, 60)
        starts = {s.start for s in slots}

        assert len(slots) == 12
        assert at(WEDNESDAY, 13, 30) not in starts
        assert at(WEDNESDAY, 14) not in starts
        assert at(WEDNESDAY, 14, 30) not in starts
        assert at(WEDNESDAY, 13) in starts
        assert at(WEDNESDAY, 15) in starts

    @pytest.mark.asyncio
    async def test_manual_block_removes_overlapping_starts(self, services):
        await services.availability.block_time(at(WEDNESDAY, 10), at(WEDNESDAY, 12), "dentist")

        starts = [s.start for s in await services.availability.get_available_slots(WEDNESDAY, 60)]

        assert starts[0] == at(WEDNESDAY, 12)
        assert len(starts) == 11

    @pytest.mark.asyncio
    async def test_configured_windows_replace_business_hours(self, services, session_factory):
        await _add_window(
            session_factory,
            day_of_week=WEDNESDAY.weekday(),
            start_time=time(16, 0),
            end_time=time(18, 0),
            price_per_hour=Decimal("200.00"),
        )

        slots = await services.availability.get_available_slots(WEDNESDAY, 60)

        assert [s.start for s in slots] == [at(WEDNESDAY, 16), at(WEDNESDAY, 16, 30), at(WEDNESDAY, 17)]
        assert slots[0].price == Decimal("200.00")
        # Tuesday has no configured window at all
        assert await services.availability.get_available_slots(TUESDAY, 60) == []

    @pytest.mark.asyncio
    async def test_window_buffer_keeps_gap_around_existing_lesson(
        self, services, session_factory, student
    ):
        await _add_window(
            session_factory, day_of_week=WEDNESDAY.weekday(), buffer_after_minutes=30
        )
        await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        starts = {s.start for s in await services.availability.get_available_slots(WEDNESDAY, 60)}

        # 13:00-14:00 plus a 30 minute buffer runs into the 14:00 lesson
        assert at(WEDNESDAY, 13) not in starts
        assert at(WEDNESDAY, 12, 30) in starts
        # The 14:00-15:00 lesson needs its own buffer before the next one
        assert at(WEDNESDAY, 15) not in starts
        assert at(WEDNESDAY, 15, 30) in starts

    @pytest.mark.asyncio
    async def test_window_buffer_applies_when_booking_right_after_a_lesson(
        self, services, session_factory, make_student
    ):
        await _add_window(
            session_factory, day_of_week=WEDNESDAY.weekday(), buffer_after_minutes=30
        )
        first = await make_student("Avi")
        second = await make_student("Noa")
        await services.booking.book(first.id, at(WEDNESDAY, 14), 60)

        check = await services.availability.is_slot_available(at(WEDNESDAY, 15), 60)

        assert check.available is False
        assert check.conflict_type == "lesson"
        with pytest.raises(SlotUnavailableError):
            await services.booking.book(second.id, at(WEDNESDAY, 15), 60)
        lesson = await services.booking.book(second.id, at(WEDNESDAY, 15, 30), 60)
        assert lesson.start_time == at(WEDNESDAY, 15, 30)


class TestGetNextAvailableSlots:
    @pytest.mark.asyncio
    async def test_results_are_chronological_and_limited(self, services):
        slots = await services.availability.get_next_available_slots(60, days=3, limit=20)

        assert len(slots) == 20
        assert [s.start for s in slots] == sorted(s.start for s in slots)
        # Monday starts at 10:00, after the 08:30 lead-time cutoff
        assert slots[0].start == at(NOW.date(), 10)

    @pytest.mark.asyncio
    async def test_days_without_windows_are_skipped(self, services, session_factory):
        await _add_window(session_factory, day_of_week=WEDNESDAY.weekday())

        slots = await services.availability.get_next_available_slots(60, days=7, limit=100)

        assert slots
        assert {s.start.astimezone(TZ).date() for s in slots} == {WEDNESDAY}


class TestIsSlotAvailable:
    """Single-slot re-check used by bookings."""

    @pytest.mark.asyncio
    async def test_free_slot_is_available_with_price(self, services):
        result = await services.availability.is_slot_available(at(WEDNESDAY, 11), 90)

        assert result.available
        assert result.conflict_type is None
        assert result.price == Decimal("225.00")

    @pytest.mark.asyncio
    async def test_within_lead_time_is_rejected(self, services):
        result = await services.availability.is_slot_available(NOW + timedelta(minutes=10), 60)

        assert not result.available
        assert result.conflict_type == "lead_time"

    @pytest.mark.asyncio
    async def test_outside_hours_is_rejected(self, services):
        late = await services.availability.is_slot_available(at(WEDNESDAY, 17, 30), 60)
        too_long = await services.availability.is_slot_available(at(WEDNESDAY, 10), 180)

        assert late.conflict_type == "outside_hours"
        assert too_long.conflict_type == "outside_hours"

    @pytest.mark.asyncio
    async def test_beyond_booking_horizon_is_rejected(self, services):
        far = at(WEDNESDAY + timedelta(days=60), 11)

        result = await services.availability.is_slot_available(far, 60)

        assert result.conflict_type == "outside_hours"

    @pytest.mark.asyncio
    async def test_blocked_time_reports_reason(self, services):
        await services.availability.block_time(at(WEDNESDAY, 12), at(WEDNESDAY, 13), "conference")

        result = await services.availability.is_slot_available(at(WEDNESDAY, 12, 30), 60)

        assert result.conflict_type == "blocked"
        assert result.details == "conference"

    @pytest.mark.asyncio
    async def test_existing_lesson_conflicts_unless_excluded(self, services, student):
        lesson = await services.booking.book(student.id, at(WEDNESDAY, 14), 60)

        taken = await services.availability.is_slot_available(at(WEDNESDAY, 14, 30), 60)
        own = await services.availability.is_slot_available(
            at(WEDNESDAY, 14, 30), 60, exclude_lesson_id=lesson.id
        )
        adjacent = await services.availability.is_slot_available(at(WEDNESDAY, 15), 60)

        assert taken.conflict_type == "lesson"
        assert own.available
        assert adjacent.available


class TestBlockTime:
    @pytest.mark.asyncio
    async def test_inverted_range_is_rejected(self, services):
        with pytest.raises(ValueError):
            await services.availability.block_time(at(WEDNESDAY, 12), at(WEDNESDAY, 11))
