"""
SQLAlchemy ORM models for the lesson scheduling core.

This module defines the core tables:
- students: People booking lessons, with counters and accrued debt
- lessons: Bookings of the teacher's time (never hard-deleted)
- waitlist_entries: Requests that could not be served when made
- notifications: Outbound messages with delivery status and retries
- availability_windows: Teacher-side weekly schedule and date exceptions
- unavailability_blocks: Ad-hoc time ranges the teacher blocked manually

All models use:
- UUID primary keys (auto-generated)
- Timezone-aware timestamps stored as UTC (see database.types.TZDateTime)
- JSONB for list/metadata fields on PostgreSQL
- Enums stored by value as strings (portable across backends)
"""

from datetime import UTC, date, datetime, time
from decimal import Decimal
from enum import Enum as PyEnum
from enum import IntEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    Uuid,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from database.types import JSONType, TZDateTime


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enum(enum_cls: type[PyEnum], name: str) -> SQLEnum:
    # Store .value ("scheduled") rather than .name ("SCHEDULED")
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda x: [e.value for e in x],
    )


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class LessonStatus(str, PyEnum):
    """Lesson lifecycle status."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED_BY_STUDENT = "cancelled_by_student"
    CANCELLED_BY_TEACHER = "cancelled_by_teacher"
    NO_SHOW = "no_show"

    def __str__(self):
        return self.value


# Statuses that occupy the teacher's time; two of these may never overlap
ACTIVE_LESSON_STATUSES = (
    LessonStatus.SCHEDULED,
    LessonStatus.CONFIRMED,
    LessonStatus.IN_PROGRESS,
)
CANCELLABLE_LESSON_STATUSES = (LessonStatus.SCHEDULED, LessonStatus.CONFIRMED)
CANCELLED_LESSON_STATUSES = (
    LessonStatus.CANCELLED_BY_STUDENT,
    LessonStatus.CANCELLED_BY_TEACHER,
)


class CalendarSyncStatus(str, PyEnum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class BookingMethod(str, PyEnum):
    """How a lesson came to exist."""

    DIRECT = "direct"
    WAITLIST_PROMOTION = "waitlist_promotion"
    RESCHEDULE = "reschedule"


class CancellationActor(str, PyEnum):
    """Who initiated a cancellation."""

    STUDENT = "student"
    TEACHER = "teacher"
    SYSTEM = "system"


class WaitlistStatus(str, PyEnum):
    ACTIVE = "active"
    NOTIFIED = "notified"
    EXPIRED = "expired"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


TERMINAL_WAITLIST_STATUSES = (
    WaitlistStatus.EXPIRED,
    WaitlistStatus.FULFILLED,
    WaitlistStatus.CANCELLED,
)


class WaitlistRequestType(str, PyEnum):
    SPECIFIC_TIME = "specific_time"
    FLEXIBLE_TIME = "flexible_time"
    NEXT_AVAILABLE = "next_available"


class UrgencyLevel(str, PyEnum):
    """Student-declared urgency; maps onto the waitlist priority tier."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def priority(self) -> int:
        return list(UrgencyLevel).index(self)


class NotificationType(str, PyEnum):
    """Reason a student is being contacted."""

    BOOKING_CONFIRMATION = "booking_confirmation"
    LESSON_REMINDER = "lesson_reminder"
    LESSON_CANCELLATION = "lesson_cancellation"
    LESSON_RESCHEDULED = "lesson_rescheduled"
    WAITLIST_ADDED = "waitlist_added"
    WAITLIST_SLOT_AVAILABLE = "waitlist_slot_available"
    WAITLIST_EXPIRED = "waitlist_expired"


class NotificationStatus(str, PyEnum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"


TERMINAL_NOTIFICATION_STATUSES = (
    NotificationStatus.SENT,
    NotificationStatus.DELIVERED,
    NotificationStatus.FAILED,
)


class NotificationPriority(IntEnum):
    """Dispatch order: higher values are sent first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


class ScheduleType(str, PyEnum):
    """
    Kind of availability window.

    RECURRING windows repeat on a weekday. SPECIFIC_DATE and available
    EXCEPTION windows replace the recurring schedule for one date.
    BLOCK windows (and unavailable EXCEPTION windows) mask time.
    """

    RECURRING = "recurring"
    SPECIFIC_DATE = "specific_date"
    EXCEPTION = "exception"
    BLOCK = "block"


# ============================================================================
# Core Models
# ============================================================================


class Student(Base):
    """
    Student model - People booking lessons with the teacher.

    `chat_id` is the recipient reference used by the notification channel.
    Lesson counters and payment debt are maintained by BookingTransaction.
    """

    __tablename__ = "students"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    chat_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    language: Mapped[str] = mapped_column(String(8), default="en", nullable=False)
    preferred_duration: Mapped[int] = mapped_column(Integer, default=60, nullable=False)

    total_lessons_booked: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_lessons_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_lessons_cancelled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    payment_debt: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), default="ILS", nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("payment_debt >= 0", name="check_student_debt_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, name='{self.name}', chat_id='{self.chat_id}')>"


class Lesson(Base):
    """
    Lesson model - A booking of the teacher's time.

    Lessons are never deleted: cancellation, completion and reconciliation
    are status transitions. A rescheduled lesson points back at the lesson it
    replaced through `original_lesson_id`.
    """

    __tablename__ = "lessons"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    student_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    # Scheduling
    start_time: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[LessonStatus] = mapped_column(
        _enum(LessonStatus, "lesson_status"),
        default=LessonStatus.SCHEDULED,
        nullable=False,
        index=True,
    )
    booking_method: Mapped[BookingMethod] = mapped_column(
        _enum(BookingMethod, "booking_method"), default=BookingMethod.DIRECT, nullable=False
    )

    # Calendar of record
    calendar_event_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    calendar_sync_status: Mapped[CalendarSyncStatus] = mapped_column(
        _enum(CalendarSyncStatus, "calendar_sync_status"),
        default=CalendarSyncStatus.PENDING,
        nullable=False,
    )
    calendar_synced_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)

    # Reschedule lineage
    original_lesson_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="SET NULL"), nullable=True
    )
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_rescheduled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Waitlist origin
    waitlist_entry_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    # Pricing
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="ILS", nullable=False)
    cancellation_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    # Content
    topic: Mapped[str | None] = mapped_column(String(200), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    teacher_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Operational flags
    confirmation_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Lifecycle stamps
    cancelled_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)
    cancelled_by: Mapped[CancellationActor | None] = mapped_column(
        _enum(CancellationActor, "cancellation_actor"), nullable=True
    )
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_lesson_duration_positive"),
        CheckConstraint("end_time > start_time", name="check_lesson_end_after_start"),
        CheckConstraint("reschedule_count >= 0", name="check_lesson_reschedule_count"),
        # Overlap queries and the reminder sweep filter on status + start
        Index("idx_lessons_status_start", "status", "start_time"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_LESSON_STATUSES

    @property
    def can_be_cancelled(self) -> bool:
        return self.status in CANCELLABLE_LESSON_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Lesson(id={self.id}, start={self.start_time.isoformat()}, "
            f"duration={self.duration_minutes}, status='{self.status.value}')>"
        )


class WaitlistEntry(Base):
    """
    WaitlistEntry model - A request that had no free slot when made.

    Preferences are either an exact window (preferred_start_time/end_time) or
    a flexible description (preferred_days + preferred_time_start/end in the
    teacher's timezone). `position` is contiguous 1..N among active entries.
    """

    __tablename__ = "waitlist_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    student_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )

    request_type: Mapped[WaitlistRequestType] = mapped_column(
        _enum(WaitlistRequestType, "waitlist_request_type"),
        default=WaitlistRequestType.FLEXIBLE_TIME,
        nullable=False,
    )

    # Exact preference
    preferred_start_time: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)
    preferred_end_time: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)

    # Flexible preference (weekday ints, 0=Monday; "HH:MM" local times)
    preferred_days: Mapped[list[int]] = mapped_column(JSONType, default=list, nullable=False)
    preferred_time_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    preferred_time_end: Mapped[str | None] = mapped_column(String(5), nullable=True)

    duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    accept_shorter: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    accept_longer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    urgency_level: Mapped[UrgencyLevel] = mapped_column(
        _enum(UrgencyLevel, "urgency_level"), default=UrgencyLevel.MEDIUM, nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[WaitlistStatus] = mapped_column(
        _enum(WaitlistStatus, "waitlist_status"),
        default=WaitlistStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    notification_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_notified_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)

    fulfilled_lesson_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("lessons.id", ondelete="SET NULL"), nullable=True
    )
    fulfilled_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_waitlist_duration_positive"),
        CheckConstraint("notification_count >= 0", name="check_waitlist_notification_count"),
        Index("idx_waitlist_status_priority", "status", "priority", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, student_id={self.student_id}, "
            f"status='{self.status.value}', position={self.position})>"
        )


class NotificationRecord(Base):
    """
    NotificationRecord model - One outbound message and its delivery state.

    Records in sent/delivered/failed are terminal and never re-sent.
    retry_count never exceeds max_retries.
    """

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    student_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    recipient: Mapped[str] = mapped_column(String(64), nullable=False)
    lesson_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    waitlist_entry_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    notification_type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType, "notification_type"), nullable=False
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[NotificationStatus] = mapped_column(
        _enum(NotificationStatus, "notification_status"),
        default=NotificationStatus.PENDING,
        nullable=False,
        index=True,
    )
    priority: Mapped[int] = mapped_column(
        Integer, default=int(NotificationPriority.NORMAL), nullable=False
    )

    scheduled_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(TZDateTime, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_message_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="check_notification_retry_bounds",
        ),
        Index("idx_notifications_due", "status", "scheduled_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationRecord(id={self.id}, type='{self.notification_type.value}', "
            f"status='{self.status.value}', retry_count={self.retry_count})>"
        )


class AvailabilityWindow(Base):
    """
    AvailabilityWindow model - Teacher-side schedule configuration.

    Read-only input to slot generation. Times are wall-clock times in the
    teacher's timezone (settings.TIMEZONE).
    """

    __tablename__ = "availability_windows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    schedule_type: Mapped[ScheduleType] = mapped_column(
        _enum(ScheduleType, "schedule_type"), default=ScheduleType.RECURRING, nullable=False
    )
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    specific_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    min_lesson_duration: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    max_lesson_duration: Mapped[int] = mapped_column(Integer, default=120, nullable=False)
    buffer_after_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_advance_booking_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    price_per_hour: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    effective_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)",
            name="check_window_day_of_week",
        ),
        CheckConstraint("end_time > start_time", name="check_window_end_after_start"),
        CheckConstraint(
            "min_lesson_duration > 0 AND max_lesson_duration >= min_lesson_duration",
            name="check_window_duration_bounds",
        ),
        Index("idx_windows_day", "schedule_type", "day_of_week"),
    )

    @property
    def span_minutes(self) -> int:
        return (
            (self.end_time.hour * 60 + self.end_time.minute)
            - (self.start_time.hour * 60 + self.start_time.minute)
        )

    def can_accommodate(self, duration_minutes: int) -> bool:
        """Duration within [min, max] and no longer than the window itself."""
        return (
            self.min_lesson_duration <= duration_minutes <= self.max_lesson_duration
            and duration_minutes <= self.span_minutes
        )

    def applies_on(self, day: date) -> bool:
        """True if the window is in effect on `day` (ignores is_available)."""
        if not self.is_active:
            return False
        if self.effective_from and day < self.effective_from:
            return False
        if self.effective_until and day > self.effective_until:
            return False
        if self.schedule_type == ScheduleType.RECURRING:
            return self.day_of_week == day.weekday()
        return self.specific_date == day

    def __repr__(self) -> str:
        when = self.specific_date.isoformat() if self.specific_date else f"dow={self.day_of_week}"
        return (
            f"<AvailabilityWindow({self.schedule_type.value} {when} "
            f"{self.start_time:%H:%M}-{self.end_time:%H:%M})>"
        )


class UnavailabilityBlock(Base):
    """
    UnavailabilityBlock model - A time range the teacher blocked by hand.

    Independent of AvailabilityWindow: any overlap removes a candidate slot.
    """

    __tablename__ = "unavailability_blocks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    start_time: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="check_block_end_after_start"),
    )

    def __repr__(self) -> str:
        return f"<UnavailabilityBlock({self.start_time.isoformat()} - {self.end_time.isoformat()})>"
