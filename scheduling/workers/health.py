"""Health-check file shared by the scheduling background jobs."""

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shared.circuit_breaker import get_breaker_status

logger = logging.getLogger(__name__)

HEALTH_FILE_NAME = "scheduling_worker_health.json"
BREAKERS_KEY = "circuit_breakers"


async def update_health_check(
    health_dir: str,
    job_name: str,
    last_run: datetime,
    status: str,
    result: dict[str, Any] | None = None,
) -> None:
    """
    Update health check file with job statistics.

    The file holds one entry per job plus an overall_status that is
    "healthy" only while every job's last run succeeded, and the current
    state of each circuit breaker. It is written to a temp file and renamed
    so readers never see a partial write.

    Args:
        health_dir: Directory holding the health file
        job_name: Name of the job
        last_run: Timestamp of job completion
        status: Health status ('healthy' or 'unhealthy')
        result: Stats returned by the job, or the error
    """
    directory = Path(health_dir)
    directory.mkdir(parents=True, exist_ok=True)
    health_file = directory / HEALTH_FILE_NAME
    temp_file = directory / f"scheduling_worker_health.{job_name}.{int(time.time())}.tmp"

    health_data: dict[str, Any] = {}
    if health_file.exists():
        try:
            health_data = json.loads(health_file.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable health check file, rewriting it: {e}")

    health_data[job_name] = {
        "last_run": last_run.isoformat(),
        "status": status,
        "result": result or {},
    }

    # Reported alongside the jobs, not counted toward overall_status
    health_data[BREAKERS_KEY] = get_breaker_status()

    all_healthy = all(
        job.get("status") == "healthy"
        for name, job in health_data.items()
        if name != BREAKERS_KEY and isinstance(job, dict)
    )
    health_data["overall_status"] = "healthy" if all_healthy else "unhealthy"
    health_data["last_updated"] = datetime.now(UTC).isoformat()

    try:
        temp_file.write_text(json.dumps(health_data, indent=2, default=str))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)
