"""
Availability Service - Bookable slots for the teacher's calendar.

Composes SlotGenerator (where lessons may go), ConflictDetector (where
lessons already are) and manual unavailability blocks into the final list
of slots a student can book. The database is the source of truth; the
calendar of record is never queried here.

Key functions:
- get_available_slots(): Bookable slots for a single day
- get_next_available_slots(): Bookable slots across the next N days
- is_slot_available(): Full re-check of one slot (used inside bookings)
- block_time(): Record a manual unavailability block
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import AvailabilityWindow, ScheduleType, UnavailabilityBlock
from database.repository import SchedulingRepository
from scheduling.ports import Clock
from scheduling.services.slot_generator import CandidateSlot, SlotGenerator
from scheduling.utils.formatting import calculate_price, format_slot_label, parse_hhmm
from scheduling.validators.conflict_detector import ConflictDetector, overlapping
from shared.config import Settings

logger = logging.getLogger(__name__)

ConflictType = Literal["lead_time", "outside_hours", "lesson", "blocked"]


class Slot(BaseModel):
    """A bookable slot annotated for display."""

    start: datetime
    end: datetime
    duration_minutes: int
    label: str
    price: Decimal
    currency: str


class SlotCheckResult(BaseModel):
    """Outcome of checking one specific slot."""

    available: bool
    conflict_type: ConflictType | None = None
    details: str | None = None
    price: Decimal | None = None


class AvailabilityChecker:
    """Produces bookable slots for a date or a date range."""

    def __init__(
        self,
        repository: SchedulingRepository,
        conflict_detector: ConflictDetector,
        slot_generator: SlotGenerator,
        clock: Clock,
        settings: Settings,
    ):
        self.repository = repository
        self.conflicts = conflict_detector
        self.generator = slot_generator
        self.clock = clock
        self.settings = settings

    # ------------------------------------------------------------------
    # Windows
    # ------------------------------------------------------------------

    def default_windows(self) -> list[AvailabilityWindow]:
        """Recurring windows derived from business-hours settings."""
        start = parse_hhmm(self.settings.BUSINESS_HOURS_START)
        end = parse_hhmm(self.settings.BUSINESS_HOURS_END)
        return [
            AvailabilityWindow(
                schedule_type=ScheduleType.RECURRING,
                day_of_week=day,
                start_time=start,
                end_time=end,
                is_available=True,
                is_active=True,
                min_lesson_duration=self.settings.MIN_LESSON_DURATION,
                max_lesson_duration=self.settings.MAX_LESSON_DURATION,
                buffer_after_minutes=0,
                max_advance_booking_days=self.settings.MAX_ADVANCE_BOOKING_DAYS,
                price_per_hour=None,
            )
            for day in self.settings.working_days
        ]

    async def load_windows(self, session: AsyncSession) -> list[AvailabilityWindow]:
        windows = await self.repository.list_availability_windows(session)
        if not windows:
            return self.default_windows()
        return windows

    # ------------------------------------------------------------------
    # Pricing / presentation
    # ------------------------------------------------------------------

    def price_for(self, duration_minutes: int, price_per_hour: Decimal | None = None) -> Decimal:
        rate = price_per_hour if price_per_hour is not None else self.settings.DEFAULT_PRICE_PER_HOUR
        return calculate_price(rate, duration_minutes)

    def _to_slot(self, candidate: CandidateSlot) -> Slot:
        return Slot(
            start=candidate.start,
            end=candidate.end,
            duration_minutes=candidate.duration_minutes,
            label=format_slot_label(candidate.start, candidate.end, self.generator.timezone),
            price=self.price_for(candidate.duration_minutes, candidate.price_per_hour),
            currency=self.settings.CURRENCY,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_available_slots(
        self,
        target_date: date,
        duration_minutes: int | None = None,
        session: AsyncSession | None = None,
    ) -> list[Slot]:
        """
        Get all bookable slots on a specific date.

        Args:
            target_date: Day to check, in the teacher's timezone
            duration_minutes: Lesson length (default: settings.DEFAULT_LESSON_DURATION)
            session: Optional open session (a new one is opened otherwise)

        Returns:
            Slots ordered by start time
        """
        if session is None:
            async with self.repository.session() as session:
                return await self.get_available_slots(target_date, duration_minutes, session)

        duration = duration_minutes or self.settings.DEFAULT_LESSON_DURATION
        windows = await self.load_windows(session)
        slots = await self._slots_for_day(session, target_date, duration, windows, self.clock.now())

        logger.info(f"Found {len(slots)} available slots on {target_date} ({duration} min)")
        return slots

    async def get_next_available_slots(
        self,
        duration_minutes: int | None = None,
        days: int | None = None,
        limit: int | None = None,
        session: AsyncSession | None = None,
    ) -> list[Slot]:
        """
        Bookable slots from today onward, in chronological order.

        Stops after `days` calendar days (default: settings.DEFAULT_SEARCH_DAYS)
        or once `limit` slots were found (default: settings.MAX_SLOT_RESULTS).
        Days without any open window are skipped without querying lessons.
        """
        if session is None:
            async with self.repository.session() as session:
                return await self.get_next_available_slots(duration_minutes, days, limit, session)

        duration = duration_minutes or self.settings.DEFAULT_LESSON_DURATION
        days = days or self.settings.DEFAULT_SEARCH_DAYS
        limit = limit or self.settings.MAX_SLOT_RESULTS

        now = self.clock.now()
        today = now.astimezone(self.generator.timezone).date()
        windows = await self.load_windows(session)

        results: list[Slot] = []
        for offset in range(days):
            day = today + timedelta(days=offset)
            if not any(w.applies_on(day) and w.is_available for w in windows):
                continue

            results.extend(await self._slots_for_day(session, day, duration, windows, now))
            if len(results) >= limit:
                break

        logger.info(f"Found {len(results[:limit])} slots across next {days} days ({duration} min)")
        return results[:limit]

    async def _slots_for_day(
        self,
        session: AsyncSession,
        day: date,
        duration_minutes: int,
        windows: list[AvailabilityWindow],
        now: datetime,
    ) -> list[Slot]:
        candidates = self.generator.generate(day, duration_minutes, windows, now)
        if not candidates:
            return []

        range_start = min(c.busy_from for c in candidates)
        range_end = max(c.busy_until for c in candidates)
        lessons = await self.repository.list_active_lessons(session, range_start, range_end)
        blocks = await self.repository.find_overlapping_blocks(session, range_start, range_end)

        return [
            self._to_slot(c)
            for c in candidates
            if not overlapping(c.busy_from, c.busy_until, lessons)
            and not overlapping(c.start, c.end, blocks)
        ]

    async def is_slot_available(
        self,
        start_time: datetime,
        duration_minutes: int,
        session: AsyncSession | None = None,
        exclude_lesson_id=None,
    ) -> SlotCheckResult:
        """
        Check one specific slot against every booking rule.

        Order of checks: minimum lead time, containing availability window
        (duration bounds, horizon, masks), manual blocks, existing lessons.
        `exclude_lesson_id` ignores one lesson (the one being rescheduled).
        """
        if session is None:
            async with self.repository.session() as session:
                return await self.is_slot_available(
                    start_time, duration_minutes, session, exclude_lesson_id
                )

        now = self.clock.now()
        end_time = start_time + timedelta(minutes=duration_minutes)

        if start_time < self.generator.earliest_start(now):
            return SlotCheckResult(
                available=False,
                conflict_type="lead_time",
                details=(
                    f"Lessons must be booked at least "
                    f"{self.settings.MIN_BOOKING_LEAD_MINUTES} minutes in advance"
                ),
            )

        windows = await self.load_windows(session)
        window = self.generator.find_window(start_time, duration_minutes, windows)
        if window is None:
            return SlotCheckResult(
                available=False,
                conflict_type="outside_hours",
                details="Requested time is outside the teacher's availability",
            )
        if start_time > now + timedelta(days=window.max_advance_booking_days):
            return SlotCheckResult(
                available=False,
                conflict_type="outside_hours",
                details=f"Lessons can be booked at most {window.max_advance_booking_days} days ahead",
            )

        blocks = await self.repository.find_overlapping_blocks(session, start_time, end_time)
        if blocks:
            return SlotCheckResult(
                available=False,
                conflict_type="blocked",
                details=blocks[0].reason or "Teacher is unavailable",
            )

        # The buffer separates this lesson from its neighbours on both sides
        buffer = timedelta(minutes=window.buffer_after_minutes or 0)
        if await self.conflicts.has_conflict(
            session, start_time - buffer, end_time + buffer, exclude_lesson_id
        ):
            return SlotCheckResult(
                available=False,
                conflict_type="lesson",
                details="Another lesson is already booked at this time",
            )

        return SlotCheckResult(
            available=True,
            price=self.price_for(duration_minutes, window.price_per_hour),
        )

    async def block_time(
        self,
        start_time: datetime,
        end_time: datetime,
        reason: str | None = None,
        session: AsyncSession | None = None,
    ) -> UnavailabilityBlock:
        """Record a manual unavailability block (committed immediately)."""
        if end_time <= start_time:
            raise ValueError("Block end must be after its start")

        if session is None:
            async with self.repository.session() as session:
                return await self.block_time(start_time, end_time, reason, session)

        block = UnavailabilityBlock(start_time=start_time, end_time=end_time, reason=reason)
        session.add(block)
        await session.commit()
        logger.info(
            f"Blocked {start_time.isoformat()} - {end_time.isoformat()}"
            + (f" ({reason})" if reason else "")
        )
        return block

