"""
Fixed-interval background job runner.

A Ticker runs one async job every `interval_seconds` on the current event
loop until stop() is called. Runs of the same ticker never overlap: a tick
that fires while the previous run is still in progress is skipped, not
queued. Job failures are logged and recorded in the health file; the
ticker keeps running.

Tests drive jobs deterministically through tick() instead of waiting on
the interval.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from scheduling.workers.health import update_health_check

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[dict[str, Any] | None]]


class Ticker:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Job,
        health_dir: str | None = None,
    ):
        self.name = name
        self.interval = interval_seconds
        self.job = job
        self.health_dir = health_dir

        self.run_in_progress = False
        self.runs = 0
        self.skipped = 0
        self.last_result: dict[str, Any] | None = None
        self.last_error: str | None = None

        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._run_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def tick(self) -> bool:
        """
        Run the job once unless a run is already in progress.

        Returns:
            True if the job ran, False if the tick was skipped
        """
        if self.run_in_progress:
            self.skipped += 1
            logger.info(
                f"Skipping {self.name} tick: previous run still in progress",
                extra={"worker": self.name},
            )
            return False

        self.run_in_progress = True
        started = time.monotonic()
        errors = 0
        try:
            self.last_result = await self.job()
            self.last_error = None
        except Exception as e:
            errors = 1
            self.last_error = f"{type(e).__name__}: {e}"
            logger.exception(f"Job {self.name} failed: {e}", extra={"worker": self.name})
        finally:
            self.run_in_progress = False
            self.runs += 1

        duration = time.monotonic() - started
        logger.info(
            f"Job {self.name} finished in {duration:.2f}s",
            extra={"worker": self.name},
        )

        if self.health_dir:
            await update_health_check(
                self.health_dir,
                job_name=self.name,
                last_run=datetime.now(UTC),
                status="healthy" if errors == 0 else "unhealthy",
                result=self.last_result if errors == 0 else {"error": self.last_error},
            )
        return True

    async def _run_loop(self) -> None:
        logger.info(
            f"Ticker {self.name} started (every {self.interval}s)",
            extra={"worker": self.name},
        )
        while not self._stop_event.is_set():
            # The tick runs as its own task so a slow run does not delay the
            # schedule; the next tick sees run_in_progress and is skipped.
            task = asyncio.create_task(self.tick(), name=f"{self.name}-tick")
            self._run_tasks.add(task)
            task.add_done_callback(self._run_tasks.discard)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Ticker {self.name} stopped", extra={"worker": self.name})

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop(), name=f"{self.name}-loop")

    async def stop(self) -> None:
        """Stop scheduling new runs and wait for an in-flight run to finish."""
        self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._run_tasks:
            await asyncio.gather(*self._run_tasks, return_exceptions=True)
