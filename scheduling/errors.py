"""
Domain exceptions for the scheduling core.

Every exception carries a stable `error_code` so callers (chat commands,
admin API, tests) can branch on the failure without parsing messages.
"""

from typing import Any
from uuid import UUID


class SchedulingError(Exception):
    """Base class for scheduling errors."""

    error_code = "SCHEDULING_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "error_message": self.message,
            "details": self.details,
        }


class SlotUnavailableError(SchedulingError):
    """The requested window is taken; the caller should search for slots again."""

    error_code = "SLOT_UNAVAILABLE"


class BookingValidationError(SchedulingError):
    """The booking request breaks a booking policy (lead time, duration, horizon)."""

    error_code = "BOOKING_INVALID"


class LessonNotFoundError(SchedulingError):
    error_code = "LESSON_NOT_FOUND"

    def __init__(self, lesson_id: UUID | str):
        super().__init__(f"Lesson {lesson_id} not found", {"lesson_id": str(lesson_id)})


class StudentNotFoundError(SchedulingError):
    error_code = "STUDENT_NOT_FOUND"

    def __init__(self, student_id: UUID | str):
        super().__init__(f"Student {student_id} not found", {"student_id": str(student_id)})


class WaitlistEntryNotFoundError(SchedulingError):
    error_code = "WAITLIST_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: UUID | str):
        super().__init__(
            f"Waitlist entry {entry_id} not found", {"waitlist_entry_id": str(entry_id)}
        )


class InvalidTransitionError(SchedulingError):
    """A status change that the lifecycle does not allow."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            {"entity": entity, "current_status": current, "target_status": target},
        )


class RescheduleLimitError(SchedulingError):
    error_code = "RESCHEDULE_LIMIT_REACHED"

    def __init__(self, lesson_id: UUID, limit: int):
        super().__init__(
            f"Lesson {lesson_id} has already been rescheduled {limit} times",
            {"lesson_id": str(lesson_id), "max_reschedules": limit},
        )


class WaitlistFullError(SchedulingError):
    error_code = "WAITLIST_FULL"

    def __init__(self, capacity: int):
        super().__init__(
            f"Waitlist is full ({capacity} active entries)", {"capacity": capacity}
        )


class NotificationDeliveryError(SchedulingError):
    """The notification channel rejected or failed to deliver a message."""

    error_code = "NOTIFICATION_DELIVERY_FAILED"


class CalendarSyncError(SchedulingError):
    """The calendar of record rejected or failed an operation."""

    error_code = "CALENDAR_SYNC_FAILED"


class ExternalServiceTimeout(SchedulingError):
    error_code = "EXTERNAL_TIMEOUT"

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"{operation} did not complete within {timeout:.1f}s",
            {"operation": operation, "timeout_seconds": timeout},
        )


class NotificationNotFoundError(SchedulingError):
    error_code = "NOTIFICATION_NOT_FOUND"

    def __init__(self, notification_id: UUID | str):
        super().__init__(
            f"Notification {notification_id} not found",
            {"notification_id": str(notification_id)},
        )
