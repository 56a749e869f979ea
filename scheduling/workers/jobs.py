"""
Background jobs of the scheduling worker.

Each job is a coroutine taking the wired SchedulingServices and returning a
stats dict (recorded in the health file by the Ticker that runs it):

- process_notifications (every minute): deliver due notifications
- run_maintenance (hourly): expire stale waitlist entries, schedule lesson
  reminders, run the lesson integrity check
- reconcile_calendar (every 5 minutes): pending-sync sweep + reconciliation
  against the calendar of record
- purge_notifications (daily): delete old terminal notifications

Steps of the maintenance job are isolated: one failing step is logged and
counted, the others still run.
"""

import logging
from datetime import timedelta
from typing import Any

from scheduling.container import SchedulingServices

logger = logging.getLogger(__name__)


async def process_notifications(services: SchedulingServices) -> dict[str, int]:
    return await services.dispatcher.process_due()


async def check_lesson_integrity(services: SchedulingServices) -> int:
    """
    Log every pair of overlapping active lessons at ERROR level.

    Overlaps mean exclusivity was violated; they are surfaced for an
    operator, never repaired automatically.

    Returns:
        Number of overlapping pairs found
    """
    since = services.clock.now() - timedelta(days=1)
    async with services.repository.session() as session:
        pairs = await services.conflicts.find_overlapping_pairs(session, since=since)

    for first, second in pairs:
        logger.error(
            f"Integrity check: active lessons {first.id} "
            f"({first.start_time.isoformat()} - {first.end_time.isoformat()}) and {second.id} "
            f"({second.start_time.isoformat()} - {second.end_time.isoformat()}) overlap",
            extra={"lesson_id": first.id, "worker": "maintenance"},
        )
    return len(pairs)


async def run_maintenance(services: SchedulingServices) -> dict[str, Any]:
    stats: dict[str, Any] = {"errors": 0}
    steps = (
        ("waitlist_expired", services.waitlist.expire_stale),
        ("reminders_scheduled", services.reminders.schedule_due_reminders),
        ("overlapping_pairs", lambda: check_lesson_integrity(services)),
    )

    for key, step in steps:
        try:
            stats[key] = await step()
        except Exception as e:
            stats["errors"] += 1
            logger.error(
                f"Maintenance step {key} failed: {e}",
                extra={"worker": "maintenance"},
                exc_info=True,
            )

    logger.info(f"Maintenance complete: {stats}", extra={"worker": "maintenance"})
    return stats


async def reconcile_calendar(services: SchedulingServices) -> dict[str, Any]:
    return await services.reconciler.run()


async def purge_notifications(services: SchedulingServices) -> dict[str, int]:
    return {"deleted": await services.dispatcher.purge()}
