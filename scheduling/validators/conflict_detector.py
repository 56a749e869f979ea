"""
Conflict detection for the teacher's calendar.

All overlap checks in the scheduling core use the closed-open interval test

    existing.start < candidate.end AND existing.end > candidate.start

so back-to-back lessons (one ends exactly when the next starts) never
conflict. Only lessons in an active status occupy time.
"""

import logging
from datetime import datetime
from typing import Iterable, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Lesson
from database.repository import SchedulingRepository

logger = logging.getLogger(__name__)


class Interval(Protocol):
    start_time: datetime
    end_time: datetime


def intervals_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Closed-open overlap test for [a_start, a_end) and [b_start, b_end)."""
    return a_start < b_end and a_end > b_start


def overlapping(
    start: datetime, end: datetime, intervals: Iterable[Interval]
) -> list[Interval]:
    """In-memory filter of `intervals` that overlap [start, end)."""
    return [i for i in intervals if intervals_overlap(i.start_time, i.end_time, start, end)]


class ConflictDetector:
    """
    Answers "does this window collide with an existing lesson?".

    Must be consulted inside the booking transaction, not only when slots are
    listed: a slot listed as free may have been taken in between.
    """

    def __init__(self, repository: SchedulingRepository):
        self.repository = repository

    async def find_conflicts(
        self,
        session: AsyncSession,
        start: datetime,
        end: datetime,
        exclude_lesson_id: UUID | None = None,
    ) -> list[Lesson]:
        return await self.repository.find_overlapping_lessons(
            session, start, end, exclude_lesson_id=exclude_lesson_id
        )

    async def has_conflict(
        self,
        session: AsyncSession,
        start: datetime,
        end: datetime,
        exclude_lesson_id: UUID | None = None,
    ) -> bool:
        conflicts = await self.find_conflicts(session, start, end, exclude_lesson_id)
        if conflicts:
            logger.debug(
                f"Window {start.isoformat()} - {end.isoformat()} conflicts with "
                f"{len(conflicts)} lesson(s): {[str(c.id) for c in conflicts]}"
            )
        return bool(conflicts)

    async def find_overlapping_pairs(
        self, session: AsyncSession, since: datetime | None = None
    ) -> list[tuple[Lesson, Lesson]]:
        """
        Every pair of active lessons whose intervals overlap.

        A non-empty result means exclusivity was violated somewhere; the
        pairs are reported, never repaired.
        """
        lessons = await self.repository.list_active_lessons(session, start=since)
        pairs: list[tuple[Lesson, Lesson]] = []

        # Lessons are sorted by start, so only later lessons starting before
        # the current one ends can overlap it
        for i, current in enumerate(lessons):
            for other in lessons[i + 1:]:
                if other.start_time >= current.end_time:
                    break
                pairs.append((current, other))

        return pairs
