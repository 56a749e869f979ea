"""
Slot generation from the teacher's availability windows.

Pure computation: given a date, a duration, the configured windows and the
current time, enumerate candidate [start, start + duration) windows stepped
at a fixed granularity. Nothing here touches the database; conflicts with
existing lessons are filtered later by AvailabilityChecker.

Window precedence for a date:
1. SPECIFIC_DATE windows and available EXCEPTION windows for that date
   replace the recurring weekday schedule.
2. Otherwise RECURRING windows for the weekday apply.
3. BLOCK windows and unavailable EXCEPTION windows mask time in either case.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from database.models import AvailabilityWindow, ScheduleType
from scheduling.validators.conflict_detector import intervals_overlap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateSlot:
    """A slot produced by the generator, before conflict filtering."""

    start: datetime
    end: datetime
    duration_minutes: int
    buffer_after_minutes: int = 0
    price_per_hour: Decimal | None = None

    @property
    def busy_from(self) -> datetime:
        """Start of the span that must be free; a lesson ending here still needs its buffer."""
        return self.start - timedelta(minutes=self.buffer_after_minutes)

    @property
    def busy_until(self) -> datetime:
        """End of the span that must be free, including the buffer."""
        return self.end + timedelta(minutes=self.buffer_after_minutes)


def split_windows(
    day: date, windows: list[AvailabilityWindow]
) -> tuple[list[AvailabilityWindow], list[AvailabilityWindow]]:
    """
    Resolve the windows in effect on `day`.

    Returns:
        (open_windows, masking_windows)
    """
    applicable = [w for w in windows if w.applies_on(day)]

    masks = [
        w for w in applicable
        if w.schedule_type == ScheduleType.BLOCK or not w.is_available
    ]
    overrides = [
        w for w in applicable
        if w.schedule_type in (ScheduleType.SPECIFIC_DATE, ScheduleType.EXCEPTION)
        and w.is_available
    ]
    if overrides:
        return overrides, masks

    recurring = [
        w for w in applicable
        if w.schedule_type == ScheduleType.RECURRING and w.is_available
    ]
    return recurring, masks


class SlotGenerator:
    """Enumerates candidate lesson slots inside availability windows."""

    def __init__(
        self,
        timezone: ZoneInfo,
        granularity_minutes: int = 30,
        min_lead_minutes: int = 30,
    ):
        self.timezone = timezone
        self.granularity = timedelta(minutes=granularity_minutes)
        self.min_lead = timedelta(minutes=min_lead_minutes)

    def window_bounds(self, day: date, window: AvailabilityWindow) -> tuple[datetime, datetime]:
        start = datetime.combine(day, window.start_time, tzinfo=self.timezone)
        end = datetime.combine(day, window.end_time, tzinfo=self.timezone)
        return start, end

    def earliest_start(self, now: datetime) -> datetime:
        """No slot may start before this instant."""
        return now + self.min_lead

    def _is_masked(
        self, day: date, start: datetime, end: datetime, masks: list[AvailabilityWindow]
    ) -> bool:
        for mask in masks:
            mask_start, mask_end = self.window_bounds(day, mask)
            if intervals_overlap(mask_start, mask_end, start, end):
                return True
        return False

    def generate(
        self,
        day: date,
        duration_minutes: int,
        windows: list[AvailabilityWindow],
        now: datetime,
    ) -> list[CandidateSlot]:
        """
        Candidate slots for `day`, ordered by start time.

        The last candidate of a window starts exactly at window end minus
        duration. Candidates starting sooner than the minimum lead time, or
        beyond the window's advance-booking horizon, are dropped.
        """
        open_windows, masks = split_windows(day, windows)
        duration = timedelta(minutes=duration_minutes)
        earliest = self.earliest_start(now)

        candidates: dict[datetime, CandidateSlot] = {}
        for window in open_windows:
            if not window.can_accommodate(duration_minutes):
                continue

            window_start, window_end = self.window_bounds(day, window)
            horizon = now + timedelta(days=window.max_advance_booking_days)

            current = window_start
            while current + duration <= window_end:
                slot_end = current + duration

                if (
                    current >= earliest
                    and current <= horizon
                    and current not in candidates
                    and not self._is_masked(day, current, slot_end, masks)
                ):
                    candidates[current] = CandidateSlot(
                        start=current,
                        end=slot_end,
                        duration_minutes=duration_minutes,
                        buffer_after_minutes=window.buffer_after_minutes or 0,
                        price_per_hour=window.price_per_hour,
                    )

                current += self.granularity

        slots = sorted(candidates.values(), key=lambda s: s.start)
        logger.debug(f"Generated {len(slots)} candidate slots for {day} ({duration_minutes} min)")
        return slots

    def find_window(
        self,
        start: datetime,
        duration_minutes: int,
        windows: list[AvailabilityWindow],
    ) -> AvailabilityWindow | None:
        """
        The open window that fully contains [start, start + duration).

        Returns None if the interval falls outside every open window, the
        duration is not accommodated, or a masking window overlaps it.
        """
        local_start = start.astimezone(self.timezone)
        day = local_start.date()
        end = local_start + timedelta(minutes=duration_minutes)
        open_windows, masks = split_windows(day, windows)

        if self._is_masked(day, local_start, end, masks):
            return None

        for window in open_windows:
            window_start, window_end = self.window_bounds(day, window)
            if (
                window.can_accommodate(duration_minutes)
                and window_start <= local_start
                and end <= window_end
            ):
                return window
        return None
