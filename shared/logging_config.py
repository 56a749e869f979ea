"""
JSON logging for the scheduling worker.

One JSON object per line on stderr, so container logs can be filtered by
lesson, student or background job. Context is passed with `extra={...}`:

    logger.info("Lesson booked", extra={"lesson_id": lesson.id, "student_id": student.id})
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from shared.config import get_settings

# Attributes copied from `extra={...}` into the JSON line when present
CONTEXT_FIELDS = (
    "lesson_id",
    "student_id",
    "waitlist_entry_id",
    "notification_id",
    "event_id",
    "worker",
)

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = {
    "googleapiclient.discovery_cache": logging.ERROR,
    "httpx": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


class JSONFormatter(logging.Formatter):
    """Render a record as timestamp/level/logger/message plus scheduling context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {field: str(getattr(record, field)) for field in CONTEXT_FIELDS if hasattr(record, field)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging() -> None:
    """Install the JSON formatter on the root logger at settings.LOG_LEVEL."""
    settings = get_settings()
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, noisy_level))

    root.info(f"Logging configured at {logging.getLevelName(level)}")
