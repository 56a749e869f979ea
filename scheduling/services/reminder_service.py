"""
Reminder Service - schedule "lesson coming up" notifications.

Runs from the hourly maintenance job. Every active lesson starting within
REMINDER_HOURS_BEFORE hours whose reminder_sent flag is still false gets a
LESSON_REMINDER notification, and the flag is set in the same transaction
so the next run never schedules a second one. A lesson moved from the
calendar has its flag reset and is reminded again for the new time.
"""

import logging
from datetime import timedelta
from zoneinfo import ZoneInfo

from database.models import NotificationType
from database.repository import SchedulingRepository
from scheduling.ports import Clock
from scheduling.services import notification_templates as templates
from scheduling.services.notification_service import NotificationDispatcher
from shared.config import Settings

logger = logging.getLogger(__name__)


class ReminderScheduler:
    def __init__(
        self,
        repository: SchedulingRepository,
        dispatcher: NotificationDispatcher,
        clock: Clock,
        settings: Settings,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.clock = clock
        self.settings = settings
        self.timezone = ZoneInfo(settings.TIMEZONE)

    async def schedule_due_reminders(self) -> int:
        """
        Returns:
            Number of reminders scheduled
        """
        now = self.clock.now()
        until = now + timedelta(hours=self.settings.REMINDER_HOURS_BEFORE)
        scheduled = 0

        async with self.repository.session() as session:
            lessons = await self.repository.list_lessons_needing_reminder(session, now, until)

            for lesson in lessons:
                student = await self.repository.get_student(session, lesson.student_id)
                if student is None:
                    logger.warning(
                        "Skipping reminder for lesson with missing student",
                        extra={"lesson_id": lesson.id, "student_id": lesson.student_id},
                    )
                    continue

                await self.dispatcher.schedule(
                    student,
                    NotificationType.LESSON_REMINDER,
                    templates.lesson_reminder(student, lesson, self.timezone),
                    lesson_id=lesson.id,
                    session=session,
                )
                lesson.reminder_sent = True
                scheduled += 1

            await session.commit()

        if scheduled:
            logger.info(f"Scheduled {scheduled} lesson reminders")
        return scheduled
