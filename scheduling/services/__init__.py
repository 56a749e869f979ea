"""
Scheduling services module.

Provides the business logic services of the scheduling core.

Services:
- slot_generator: candidate slots inside availability windows
- availability_service: DB-first bookable slots, single-slot checks, manual blocks
- waitlist_service: queue of unmet requests, matching freed windows
- notification_service: persisted notifications with bounded retries
- reminder_service: "lesson coming up" reminders
- gcal_service: Google Calendar adapter (calendar of record)
- calendar_reconciler: pending-sync sweep and out-of-band change detection
  (import from its module; it depends on scheduling.transactions)
"""

from scheduling.services.availability_service import (
    AvailabilityChecker,
    Slot,
    SlotCheckResult,
)
from scheduling.services.gcal_service import GoogleCalendarAdapter
from scheduling.services.notification_service import NotificationDispatcher
from scheduling.services.reminder_service import ReminderScheduler
from scheduling.services.slot_generator import CandidateSlot, SlotGenerator
from scheduling.services.waitlist_service import WaitlistManager, WaitlistPreference

__all__ = [
    "AvailabilityChecker",
    "CandidateSlot",
    "GoogleCalendarAdapter",
    "NotificationDispatcher",
    "ReminderScheduler",
    "Slot",
    "SlotCheckResult",
    "SlotGenerator",
    "WaitlistManager",
    "WaitlistPreference",
]
