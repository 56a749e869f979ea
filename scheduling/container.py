"""
Service wiring for the scheduling core.

Every service is constructed exactly once, here, and handed its
collaborators explicitly. Entry points (scheduling.main, scripts, tests)
call build_services() with the adapters they want (real Google Calendar
and Telegram in production, in-memory fakes in tests).
"""

from dataclasses import dataclass
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.repository import SchedulingRepository
from scheduling.ports import CalendarPort, Clock, NotifierPort
from scheduling.services.availability_service import AvailabilityChecker
from scheduling.services.calendar_reconciler import CalendarReconciler
from scheduling.services.notification_service import NotificationDispatcher
from scheduling.services.reminder_service import ReminderScheduler
from scheduling.services.slot_generator import SlotGenerator
from scheduling.services.waitlist_service import WaitlistManager
from scheduling.transactions.booking_transaction import BookingTransaction
from scheduling.validators.conflict_detector import ConflictDetector
from shared.config import Settings


@dataclass
class SchedulingServices:
    settings: Settings
    clock: Clock
    repository: SchedulingRepository
    conflicts: ConflictDetector
    slots: SlotGenerator
    availability: AvailabilityChecker
    dispatcher: NotificationDispatcher
    waitlist: WaitlistManager
    booking: BookingTransaction
    reminders: ReminderScheduler
    reconciler: CalendarReconciler


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    calendar: CalendarPort,
    notifier: NotifierPort,
    clock: Clock,
) -> SchedulingServices:
    repository = SchedulingRepository(session_factory)
    conflicts = ConflictDetector(repository)
    slots = SlotGenerator(
        timezone=ZoneInfo(settings.TIMEZONE),
        granularity_minutes=settings.SLOT_GRANULARITY_MINUTES,
        min_lead_minutes=settings.MIN_BOOKING_LEAD_MINUTES,
    )
    availability = AvailabilityChecker(repository, conflicts, slots, clock, settings)
    dispatcher = NotificationDispatcher(repository, notifier, clock, settings)
    waitlist = WaitlistManager(repository, conflicts, dispatcher, clock, settings)
    booking = BookingTransaction(
        repository, availability, conflicts, waitlist, dispatcher, calendar, clock, settings
    )
    reminders = ReminderScheduler(repository, dispatcher, clock, settings)
    reconciler = CalendarReconciler(repository, booking, calendar, clock, settings)

    return SchedulingServices(
        settings=settings,
        clock=clock,
        repository=repository,
        conflicts=conflicts,
        slots=slots,
        availability=availability,
        dispatcher=dispatcher,
        waitlist=waitlist,
        booking=booking,
        reminders=reminders,
        reconciler=reconciler,
    )
