"""
Waitlist Service - Queue unmet lesson requests and offer freed time.

Queue order is priority tier descending, then creation time ascending.
`position` is recomputed over all active entries after every status change,
so active positions are always the contiguous sequence 1..N.

When a lesson is cancelled, match_and_notify() offers the freed window to
the best-ranked matching entries (at most WAITLIST_NOTIFY_TOP_N) and moves
them to `notified`. A student who passes on the offer goes back to `active`
through decline(); booking through the offer fulfills the entry.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    NotificationType,
    UrgencyLevel,
    WaitlistEntry,
    WaitlistRequestType,
    WaitlistStatus,
)
from database.repository import SchedulingRepository
from scheduling.errors import (
    InvalidTransitionError,
    StudentNotFoundError,
    WaitlistEntryNotFoundError,
    WaitlistFullError,
)
from scheduling.ports import Clock
from scheduling.services import notification_templates as templates
from scheduling.services.notification_service import NotificationDispatcher
from scheduling.utils.formatting import parse_hhmm
from scheduling.validators.conflict_detector import ConflictDetector
from shared.config import Settings

logger = logging.getLogger(__name__)


class WaitlistPreference(BaseModel):
    """What a student is waiting for."""

    request_type: WaitlistRequestType = WaitlistRequestType.FLEXIBLE_TIME
    preferred_start_time: datetime | None = None
    preferred_end_time: datetime | None = None
    preferred_days: list[int] = Field(default_factory=list)
    preferred_time_start: str | None = None
    preferred_time_end: str | None = None
    duration_minutes: int = Field(default=60, gt=0)
    accept_shorter: bool = False
    accept_longer: bool = False
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    max_wait_days: int | None = Field(default=None, gt=0)
    notes: str | None = None

    @field_validator("preferred_days")
    @classmethod
    def _valid_weekdays(cls, days: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in days):
            raise ValueError("preferred_days must be weekday numbers 0 (Monday) to 6 (Sunday)")
        return sorted(set(days))

    @field_validator("preferred_time_start", "preferred_time_end")
    @classmethod
    def _valid_hhmm(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return parse_hhmm(value).strftime("%H:%M")

    @model_validator(mode="after")
    def _consistent(self) -> "WaitlistPreference":
        if self.request_type == WaitlistRequestType.SPECIFIC_TIME and not self.preferred_start_time:
            raise ValueError("specific_time requests need preferred_start_time")
        if self.preferred_start_time and self.preferred_start_time.tzinfo is None:
            raise ValueError("preferred_start_time must be timezone-aware")
        return self


class WaitlistManager:
    """Maintains the ordered waitlist and matches freed windows to it."""

    def __init__(
        self,
        repository: SchedulingRepository,
        conflict_detector: ConflictDetector,
        dispatcher: NotificationDispatcher,
        clock: Clock,
        settings: Settings,
    ):
        self.repository = repository
        self.conflicts = conflict_detector
        self.dispatcher = dispatcher
        self.clock = clock
        self.settings = settings
        self.timezone = ZoneInfo(settings.TIMEZONE)
        self.tolerance = timedelta(hours=settings.WAITLIST_MATCH_TOLERANCE_HOURS)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    async def recompute_positions(self, session: AsyncSession) -> None:
        """Renumber active entries 1..N; everything else gets no position."""
        await session.flush()
        active = await self.repository.list_waitlist_by_status(session, WaitlistStatus.ACTIVE)
        for index, entry in enumerate(active, start=1):
            if entry.position != index:
                entry.position = index

        await self.repository.clear_inactive_positions(session)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        student_id: UUID,
        preference: WaitlistPreference,
        session: AsyncSession | None = None,
    ) -> WaitlistEntry:
        """
        Add a student to the waitlist and send the "added" notification.

        Raises:
            StudentNotFoundError: Unknown student
            WaitlistFullError: WAITLIST_MAX_ENTRIES active entries already
        """
        if session is None:
            async with self.repository.session() as session:
                return await self.enqueue(student_id, preference, session)

        student = await self.repository.get_student(session, student_id)
        if student is None:
            raise StudentNotFoundError(student_id)

        active_count = await self.repository.count_waitlist(session, WaitlistStatus.ACTIVE)
        if active_count >= self.settings.WAITLIST_MAX_ENTRIES:
            raise WaitlistFullError(self.settings.WAITLIST_MAX_ENTRIES)

        now = self.clock.now()
        max_wait_days = preference.max_wait_days or self.settings.WAITLIST_MAX_WAIT_DAYS

        entry = WaitlistEntry(
            student_id=student.id,
            request_type=preference.request_type,
            preferred_start_time=preference.preferred_start_time,
            preferred_end_time=preference.preferred_end_time,
            preferred_days=preference.preferred_days,
            preferred_time_start=preference.preferred_time_start,
            preferred_time_end=preference.preferred_time_end,
            duration_minutes=preference.duration_minutes,
            accept_shorter=preference.accept_shorter,
            accept_longer=preference.accept_longer,
            urgency_level=preference.urgency_level,
            priority=preference.urgency_level.priority,
            status=WaitlistStatus.ACTIVE,
            position=active_count + 1,
            expires_at=now + timedelta(days=max_wait_days),
            notification_count=0,
            notes=preference.notes,
            created_at=now,
        )
        session.add(entry)
        await self.recompute_positions(session)

        await self.dispatcher.schedule(
            student,
            NotificationType.WAITLIST_ADDED,
            templates.waitlist_added(student, entry),
            waitlist_entry_id=entry.id,
            session=session,
        )
        await session.commit()

        logger.info(
            f"Student added to waitlist at position {entry.position}",
            extra={"waitlist_entry_id": entry.id, "student_id": student.id},
        )
        return entry

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def matches(self, entry: WaitlistEntry, start: datetime, end: datetime) -> bool:
        """
        Whether the freed window [start, end) satisfies the entry's preferences.

        Checks, in the teacher's timezone: weekday (if constrained), start
        time inside the inclusive HH:MM range (if constrained), start within
        the tolerance of an exact preferred time (if given), and duration
        per the shorter/longer flags.
        """
        local_start = start.astimezone(self.timezone)

        if entry.preferred_days and local_start.weekday() not in entry.preferred_days:
            return False

        if entry.preferred_time_start and entry.preferred_time_end:
            slot_time = local_start.strftime("%H:%M")
            if not entry.preferred_time_start <= slot_time <= entry.preferred_time_end:
                return False

        if entry.preferred_start_time is not None:
            if abs(start - entry.preferred_start_time) > self.tolerance:
                return False

        duration = int((end - start).total_seconds() // 60)
        if duration < entry.duration_minutes and not entry.accept_shorter:
            return False
        if duration > entry.duration_minutes and not entry.accept_longer:
            return False

        return True

    async def find_matches(
        self, session: AsyncSession, start: datetime, end: datetime
    ) -> list[WaitlistEntry]:
        """Active, unexpired, still-notifiable entries matching the window, in queue order."""
        now = self.clock.now()
        active = await self.repository.list_waitlist_by_status(session, WaitlistStatus.ACTIVE)
        return [
            entry for entry in active
            if entry.expires_at > now
            and entry.notification_count < self.settings.WAITLIST_MAX_NOTIFICATIONS
            and self.matches(entry, start, end)
        ]

    async def match_and_notify(self, start: datetime, end: datetime) -> list[WaitlistEntry]:
        """
        Offer a freed window to the best-ranked matching entries.

        The window must still be free of active lessons; if it was taken in
        the meantime nobody is notified. Up to WAITLIST_NOTIFY_TOP_N entries
        are moved to `notified` and sent a slot-available message.

        Returns:
            The entries that were notified
        """
        async with self.repository.session() as session:
            if await self.conflicts.has_conflict(session, start, end):
                logger.info(
                    f"Freed window {start.isoformat()} was re-booked, skipping waitlist offer"
                )
                return []

            candidates = await self.find_matches(session, start, end)
            selected = candidates[: self.settings.WAITLIST_NOTIFY_TOP_N]
            if not selected:
                logger.debug(f"No waitlist matches for {start.isoformat()} - {end.isoformat()}")
                return []

            now = self.clock.now()
            notified = []
            for entry in selected:
                student = await self.repository.get_student(session, entry.student_id)
                if student is None:
                    logger.warning(
                        "Waitlist entry has no student, not offering the window",
                        extra={"waitlist_entry_id": entry.id},
                    )
                    continue

                entry.status = WaitlistStatus.NOTIFIED
                entry.notification_count += 1
                entry.last_notified_at = now

                await self.dispatcher.schedule(
                    student,
                    NotificationType.WAITLIST_SLOT_AVAILABLE,
                    templates.waitlist_slot_available(student, start, end, self.timezone),
                    waitlist_entry_id=entry.id,
                    session=session,
                )
                notified.append(entry)

            await self.recompute_positions(session)
            await session.commit()

        logger.info(
            f"Notified {len(notified)} waitlist entries of freed window {start.isoformat()}",
            extra={"waitlist_entry_id": ",".join(str(e.id) for e in notified)},
        )
        return notified

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        entry_id: UUID,
        target: WaitlistStatus,
        allowed_from: tuple[WaitlistStatus, ...],
        session: AsyncSession | None,
        **changes,
    ) -> WaitlistEntry:
        if session is None:
            async with self.repository.session() as session:
                entry = await self._transition(entry_id, target, allowed_from, session, **changes)
                await session.commit()
                return entry

        entry = await self.repository.get_waitlist_entry(session, entry_id)
        if entry is None:
            raise WaitlistEntryNotFoundError(entry_id)
        if entry.status not in allowed_from:
            raise InvalidTransitionError("waitlist entry", entry.status.value, target.value)

        entry.status = target
        for field, value in changes.items():
            setattr(entry, field, value)
        await self.recompute_positions(session)

        logger.info(
            f"Waitlist entry moved to {target.value}",
            extra={"waitlist_entry_id": entry.id, "student_id": entry.student_id},
        )
        return entry

    async def fulfill(
        self, entry_id: UUID, lesson_id: UUID, session: AsyncSession | None = None
    ) -> WaitlistEntry:
        """
        Mark an entry fulfilled by a booked lesson.

        With a session the change joins the caller's transaction uncommitted.
        """
        return await self._transition(
            entry_id,
            WaitlistStatus.FULFILLED,
            (WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED),
            session,
            fulfilled_lesson_id=lesson_id,
            fulfilled_at=self.clock.now(),
        )

    async def cancel(self, entry_id: UUID, reason: str | None = None) -> WaitlistEntry:
        async with self.repository.session() as session:
            entry = await self._transition(
                entry_id,
                WaitlistStatus.CANCELLED,
                (WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED),
                session,
            )
            if reason:
                entry.notes = f"{entry.notes}\n{reason}" if entry.notes else reason
            await session.commit()
            return entry

    async def decline(self, entry_id: UUID) -> WaitlistEntry:
        """The student passed on an offer: back into the active queue."""
        return await self._transition(
            entry_id, WaitlistStatus.ACTIVE, (WaitlistStatus.NOTIFIED,), None
        )

    async def expire_stale(self) -> int:
        """
        Expire active/notified entries past their expiry.

        Expiry is silent: no notification is sent.

        Returns:
            Number of entries expired
        """
        now = self.clock.now()
        async with self.repository.session() as session:
            stale = await self.repository.list_expired_waitlist(session, now)
            if not stale:
                return 0

            for entry in stale:
                entry.status = WaitlistStatus.EXPIRED
            await self.recompute_positions(session)
            await session.commit()

        logger.info(f"Expired {len(stale)} waitlist entries")
        return len(stale)

    async def stats(self) -> dict[str, int]:
        async with self.repository.session() as session:
            counts = await self.repository.count_waitlist_by_status(session)
        return {status.value: counts.get(status.value, 0) for status in WaitlistStatus}
