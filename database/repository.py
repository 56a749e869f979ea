"""
Persistence port for the scheduling core.

SchedulingRepository owns the session factory and the query shapes the
services need (overlap queries, due-notification selection, ordered waitlist
reads, status counts). Query methods take an open AsyncSession as their
first argument so callers control transaction boundaries; only the
services commit.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    ACTIVE_LESSON_STATUSES,
    AvailabilityWindow,
    CalendarSyncStatus,
    Lesson,
    NotificationRecord,
    NotificationStatus,
    Student,
    TERMINAL_NOTIFICATION_STATUSES,
    UnavailabilityBlock,
    WaitlistEntry,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)


class SchedulingRepository:
    """Query and persistence operations over the scheduling tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    def session(self) -> AsyncSession:
        """Open a new session (use as an async context manager)."""
        return self._session_factory()

    async def begin_serializable(self, session: AsyncSession) -> None:
        """
        Raise the isolation level of the session's transaction to SERIALIZABLE.

        Must be the first statement of the transaction. SQLite transactions
        are already serialized by the database lock, so this is a no-op there.
        """
        if session.bind.dialect.name == "postgresql":
            await session.execute(text("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE"))

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    async def get_student(self, session: AsyncSession, student_id: UUID) -> Student | None:
        return await session.get(Student, student_id)

    # ------------------------------------------------------------------
    # Lessons
    # ------------------------------------------------------------------

    async def get_lesson(self, session: AsyncSession, lesson_id: UUID) -> Lesson | None:
        return await session.get(Lesson, lesson_id)

    async def get_lesson_by_event_id(self, session: AsyncSession, event_id: str) -> Lesson | None:
        result = await session.execute(
            select(Lesson).where(Lesson.calendar_event_id == event_id)
        )
        return result.scalars().first()

    async def find_overlapping_lessons(
        self,
        session: AsyncSession,
        start: datetime,
        end: datetime,
        exclude_lesson_id: UUID | None = None,
    ) -> list[Lesson]:
        """
        Active lessons whose [start, end) intersects [start, end).

        Closed-open: a lesson ending exactly at `start` does not overlap.
        """
        stmt = select(Lesson).where(
            Lesson.status.in_(ACTIVE_LESSON_STATUSES),
            Lesson.start_time < end,
            Lesson.end_time > start,
        )
        if exclude_lesson_id is not None:
            stmt = stmt.where(Lesson.id != exclude_lesson_id)
        result = await session.execute(stmt.order_by(Lesson.start_time))
        return list(result.scalars().all())

    async def list_active_lessons(
        self,
        session: AsyncSession,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Lesson]:
        stmt = select(Lesson).where(Lesson.status.in_(ACTIVE_LESSON_STATUSES))
        if start is not None:
            stmt = stmt.where(Lesson.end_time > start)
        if end is not None:
            stmt = stmt.where(Lesson.start_time < end)
        result = await session.execute(stmt.order_by(Lesson.start_time, Lesson.id))
        return list(result.scalars().all())

    async def list_lessons_needing_sync(self, session: AsyncSession, now: datetime) -> list[Lesson]:
        """Upcoming active lessons whose calendar event is missing or failed."""
        result = await session.execute(
            select(Lesson)
            .where(
                Lesson.status.in_(ACTIVE_LESSON_STATUSES),
                Lesson.end_time > now,
                Lesson.calendar_sync_status.in_(
                    (CalendarSyncStatus.PENDING, CalendarSyncStatus.ERROR)
                ),
            )
            .order_by(Lesson.start_time)
        )
        return list(result.scalars().all())

    async def list_lessons_needing_reminder(
        self, session: AsyncSession, now: datetime, until: datetime
    ) -> list[Lesson]:
        result = await session.execute(
            select(Lesson)
            .where(
                Lesson.status.in_(ACTIVE_LESSON_STATUSES),
                Lesson.reminder_sent.is_(False),
                Lesson.start_time > now,
                Lesson.start_time <= until,
            )
            .order_by(Lesson.start_time)
        )
        return list(result.scalars().all())

    async def update_lesson_sync(
        self,
        session: AsyncSession,
        lesson_id: UUID,
        status: CalendarSyncStatus,
        event_id: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {"calendar_sync_status": status}
        if event_id is not None:
            values["calendar_event_id"] = event_id
        if synced_at is not None:
            values["calendar_synced_at"] = synced_at
        await session.execute(update(Lesson).where(Lesson.id == lesson_id).values(**values))

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def list_availability_windows(self, session: AsyncSession) -> list[AvailabilityWindow]:
        result = await session.execute(
            select(AvailabilityWindow)
            .where(AvailabilityWindow.is_active.is_(True))
            .order_by(AvailabilityWindow.start_time)
        )
        return list(result.scalars().all())

    async def find_overlapping_blocks(
        self, session: AsyncSession, start: datetime, end: datetime
    ) -> list[UnavailabilityBlock]:
        result = await session.execute(
            select(UnavailabilityBlock)
            .where(UnavailabilityBlock.start_time < end, UnavailabilityBlock.end_time > start)
            .order_by(UnavailabilityBlock.start_time)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Waitlist
    # ------------------------------------------------------------------

    async def get_waitlist_entry(self, session: AsyncSession, entry_id: UUID) -> WaitlistEntry | None:
        return await session.get(WaitlistEntry, entry_id)

    async def list_waitlist_by_status(
        self, session: AsyncSession, *statuses: WaitlistStatus
    ) -> list[WaitlistEntry]:
        """Entries in queue order: priority desc, then creation time asc."""
        result = await session.execute(
            select(WaitlistEntry)
            .where(WaitlistEntry.status.in_(statuses))
            .order_by(
                WaitlistEntry.priority.desc(),
                WaitlistEntry.created_at.asc(),
                WaitlistEntry.id.asc(),
            )
        )
        return list(result.scalars().all())

    async def clear_inactive_positions(self, session: AsyncSession) -> None:
        """Drop the queue position of every entry that left the active set."""
        await session.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.status != WaitlistStatus.ACTIVE,
                WaitlistEntry.position.is_not(None),
            )
            .values(position=None)
        )

    async def list_expired_waitlist(self, session: AsyncSession, now: datetime) -> list[WaitlistEntry]:
        result = await session.execute(
            select(WaitlistEntry).where(
                WaitlistEntry.status.in_((WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED)),
                WaitlistEntry.expires_at <= now,
            )
        )
        return list(result.scalars().all())

    async def count_waitlist_by_status(self, session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(WaitlistEntry.status, func.count()).group_by(WaitlistEntry.status)
        )
        return {status.value: count for status, count in result.all()}

    async def count_waitlist(self, session: AsyncSession, status: WaitlistStatus) -> int:
        result = await session.execute(
            select(func.count()).select_from(WaitlistEntry).where(WaitlistEntry.status == status)
        )
        return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def get_notification(
        self, session: AsyncSession, notification_id: UUID
    ) -> NotificationRecord | None:
        return await session.get(NotificationRecord, notification_id)

    async def list_due_notifications(
        self, session: AsyncSession, now: datetime, limit: int
    ) -> list[NotificationRecord]:
        """Pending/retrying records due by `now`: priority desc, then scheduled_at asc."""
        result = await session.execute(
            select(NotificationRecord)
            .where(
                NotificationRecord.status.in_(
                    (NotificationStatus.PENDING, NotificationStatus.RETRYING)
                ),
                NotificationRecord.scheduled_at <= now,
            )
            .order_by(
                NotificationRecord.priority.desc(),
                NotificationRecord.scheduled_at.asc(),
                NotificationRecord.created_at.asc(),
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def delete_terminal_notifications(self, session: AsyncSession, before: datetime) -> int:
        result = await session.execute(
            delete(NotificationRecord).where(
                NotificationRecord.status.in_(TERMINAL_NOTIFICATION_STATUSES),
                NotificationRecord.created_at < before,
            )
        )
        return result.rowcount or 0
