"""
Scheduling worker entry point.

Wires the scheduling core once at startup (Google Calendar + Telegram
adapters, system clock) and runs the background tickers on a single event
loop until SIGTERM/SIGINT:

- notifications: every NOTIFICATION_INTERVAL_SECONDS
- maintenance: every MAINTENANCE_INTERVAL_SECONDS
- reconciliation: every RECONCILE_INTERVAL_SECONDS
- purge: every PURGE_INTERVAL_SECONDS

Run with: python -m scheduling.main
"""

import asyncio
import logging
import signal
from functools import partial

from database.connection import dispose_engine, get_session_factory
from scheduling.container import SchedulingServices, build_services
from scheduling.services.gcal_service import GoogleCalendarAdapter
from scheduling.workers import jobs
from scheduling.workers.ticker import Ticker
from shared.clock import SystemClock
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.telegram_client import TelegramNotifier

logger = logging.getLogger(__name__)


def build_tickers(services: SchedulingServices) -> list[Ticker]:
    settings = services.settings
    health_dir = settings.HEALTH_CHECK_DIR
    return [
        Ticker(
            "notifications",
            settings.NOTIFICATION_INTERVAL_SECONDS,
            partial(jobs.process_notifications, services),
            health_dir,
        ),
        Ticker(
            "maintenance",
            settings.MAINTENANCE_INTERVAL_SECONDS,
            partial(jobs.run_maintenance, services),
            health_dir,
        ),
        Ticker(
            "reconciliation",
            settings.RECONCILE_INTERVAL_SECONDS,
            partial(jobs.reconcile_calendar, services),
            health_dir,
        ),
        Ticker(
            "purge",
            settings.PURGE_INTERVAL_SECONDS,
            partial(jobs.purge_notifications, services),
            health_dir,
        ),
    ]


async def async_main() -> None:
    """
    Run every ticker until a shutdown signal arrives.

    Handles graceful shutdown on SIGTERM/SIGINT: tickers stop scheduling new
    runs, in-flight runs finish, then the engine is disposed.
    """
    settings = get_settings()
    services = build_services(
        settings,
        get_session_factory(),
        calendar=GoogleCalendarAdapter(settings),
        notifier=TelegramNotifier(settings),
        clock=SystemClock(),
    )

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    tickers = build_tickers(services)
    logger.info(
        f"Scheduling worker starting: {', '.join(f'{t.name}={t.interval}s' for t in tickers)}"
    )
    for ticker in tickers:
        ticker.start()

    await shutdown.wait()
    logger.info("Shutdown signal received, stopping tickers...")

    await asyncio.gather(*(ticker.stop() for ticker in tickers))
    await dispose_engine()
    logger.info("Scheduling worker shut down gracefully")


def run_worker() -> None:
    """Synchronous entry point: logging first, then a single event loop."""
    configure_logging()
    asyncio.run(async_main())


if __name__ == "__main__":
    run_worker()
