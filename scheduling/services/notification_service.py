"""
Notification Service - Schedule, send and retry student notifications.

Every message to a student is first persisted as a NotificationRecord
(status=pending) in the same transaction as the domain change that caused
it. A periodic run (process_due) delivers due records through the
NotifierPort:

- success: status -> sent (or delivered if the channel confirms delivery)
- failure: retry_count + 1; status -> retrying with scheduled_at pushed
  back by a fixed delay while retry_count < max_retries, else -> failed

Terminal records (sent/delivered/failed) are never re-sent and are purged
after the retention window.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    NotificationPriority,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    Student,
    TERMINAL_NOTIFICATION_STATUSES,
)
from database.repository import SchedulingRepository
from scheduling.errors import InvalidTransitionError, NotificationNotFoundError
from scheduling.ports import Clock, NotifierPort
from shared.config import Settings
from shared.resilient_api import with_timeout

logger = logging.getLogger(__name__)

# Default priority per notification type
TYPE_PRIORITIES: dict[NotificationType, NotificationPriority] = {
    NotificationType.LESSON_CANCELLATION: NotificationPriority.HIGH,
    NotificationType.LESSON_RESCHEDULED: NotificationPriority.HIGH,
    NotificationType.WAITLIST_SLOT_AVAILABLE: NotificationPriority.URGENT,
    NotificationType.LESSON_REMINDER: NotificationPriority.NORMAL,
    NotificationType.BOOKING_CONFIRMATION: NotificationPriority.NORMAL,
    NotificationType.WAITLIST_ADDED: NotificationPriority.LOW,
    NotificationType.WAITLIST_EXPIRED: NotificationPriority.LOW,
}


class NotificationDispatcher:
    """Persists outbound notifications and delivers them with bounded retries."""

    def __init__(
        self,
        repository: SchedulingRepository,
        notifier: NotifierPort,
        clock: Clock,
        settings: Settings,
    ):
        self.repository = repository
        self.notifier = notifier
        self.clock = clock
        self.settings = settings
        self.retry_delay = timedelta(minutes=settings.NOTIFICATION_RETRY_DELAY_MINUTES)

    async def schedule(
        self,
        student: Student,
        notification_type: NotificationType,
        message: str,
        *,
        lesson_id: UUID | None = None,
        waitlist_entry_id: UUID | None = None,
        priority: NotificationPriority | None = None,
        scheduled_at: datetime | None = None,
        session: AsyncSession | None = None,
    ) -> NotificationRecord:
        """
        Persist a pending notification.

        With a session the record joins the caller's transaction (flushed,
        not committed) so it commits or rolls back with the domain change.
        Without one it is committed in its own session.
        """
        if priority is None:
            priority = TYPE_PRIORITIES.get(notification_type, NotificationPriority.NORMAL)

        now = self.clock.now()
        record = NotificationRecord(
            student_id=student.id,
            recipient=student.chat_id,
            lesson_id=lesson_id,
            waitlist_entry_id=waitlist_entry_id,
            notification_type=notification_type,
            message=message,
            status=NotificationStatus.PENDING,
            priority=int(priority),
            scheduled_at=scheduled_at or now,
            retry_count=0,
            max_retries=self.settings.NOTIFICATION_MAX_RETRIES,
            created_at=now,
        )

        if session is None:
            async with self.repository.session() as own_session:
                own_session.add(record)
                await own_session.commit()
        else:
            session.add(record)
            await session.flush()

        logger.info(
            f"Scheduled {notification_type.value} notification for student {student.id}",
            extra={
                "notification_id": record.id,
                "student_id": student.id,
                "lesson_id": lesson_id,
                "waitlist_entry_id": waitlist_entry_id,
            },
        )
        return record

    async def process_due(self) -> dict[str, int]:
        """
        Deliver every due pending/retrying record.

        Records are handled one at a time in priority order, each in its own
        transaction, so a failure on one never affects the others.

        Returns:
            Stats dict with processed/sent/retrying/failed counts
        """
        stats = {"processed": 0, "sent": 0, "retrying": 0, "failed": 0}
        now = self.clock.now()

        async with self.repository.session() as session:
            due = await self.repository.list_due_notifications(
                session, now, self.settings.NOTIFICATION_BATCH_SIZE
            )
            due_ids = [record.id for record in due]

        if not due_ids:
            return stats

        logger.info(f"Processing {len(due_ids)} due notifications")

        for notification_id in due_ids:
            status = await self._deliver(notification_id)
            if status is None:
                continue
            stats["processed"] += 1
            if status in (NotificationStatus.SENT, NotificationStatus.DELIVERED):
                stats["sent"] += 1
            elif status == NotificationStatus.RETRYING:
                stats["retrying"] += 1
            else:
                stats["failed"] += 1

        logger.info(
            f"Notification run complete: {stats['sent']} sent, "
            f"{stats['retrying']} retrying, {stats['failed']} failed"
        )
        return stats

    async def _deliver(self, notification_id: UUID) -> NotificationStatus | None:
        async with self.repository.session() as session:
            record = await self.repository.get_notification(session, notification_id)
            if record is None or record.status in TERMINAL_NOTIFICATION_STATUSES:
                return None

            log_extra: dict[str, Any] = {
                "notification_id": record.id,
                "student_id": record.student_id,
            }

            try:
                receipt = await with_timeout(
                    self.notifier.send(
                        record.recipient,
                        record.message,
                        {"priority": record.priority, "type": record.notification_type.value},
                    ),
                    self.settings.NOTIFIER_TIMEOUT_SECONDS,
                    "notifier.send",
                )
            except Exception as e:
                now = self.clock.now()
                record.retry_count += 1
                record.last_error = f"{type(e).__name__}: {e}"[:1000]

                if record.retry_count < record.max_retries:
                    record.status = NotificationStatus.RETRYING
                    record.scheduled_at = now + self.retry_delay
                    logger.warning(
                        f"Notification delivery failed (attempt {record.retry_count}/"
                        f"{record.max_retries}), retrying at {record.scheduled_at.isoformat()}: {e}",
                        extra=log_extra,
                    )
                else:
                    record.status = NotificationStatus.FAILED
                    record.failed_at = now
                    logger.error(
                        f"Notification delivery failed permanently after "
                        f"{record.retry_count} attempts: {e}",
                        extra=log_extra,
                    )
            else:
                now = self.clock.now()
                record.status = NotificationStatus.SENT
                record.sent_at = now
                record.external_message_id = receipt.message_id
                if receipt.delivered:
                    record.status = NotificationStatus.DELIVERED
                    record.delivered_at = now
                logger.info(
                    f"Notification {record.notification_type.value} sent",
                    extra=log_extra,
                )

            await session.commit()
            return record.status

    async def mark_delivered(self, notification_id: UUID) -> NotificationRecord:
        """Move a sent record to delivered (channel delivery report)."""
        async with self.repository.session() as session:
            record = await self.repository.get_notification(session, notification_id)
            if record is None:
                raise NotificationNotFoundError(notification_id)
            if record.status == NotificationStatus.DELIVERED:
                return record
            if record.status != NotificationStatus.SENT:
                raise InvalidTransitionError(
                    "notification", record.status.value, NotificationStatus.DELIVERED.value
                )

            record.status = NotificationStatus.DELIVERED
            record.delivered_at = self.clock.now()
            await session.commit()
            return record

    async def purge(self) -> int:
        """Delete terminal records older than the retention window."""
        cutoff = self.clock.now() - timedelta(days=self.settings.NOTIFICATION_RETENTION_DAYS)
        async with self.repository.session() as session:
            deleted = await self.repository.delete_terminal_notifications(session, cutoff)
            await session.commit()

        logger.info(f"Purged {deleted} notifications older than {cutoff.date().isoformat()}")
        return deleted
