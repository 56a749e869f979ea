"""Wall-clock source injected into the scheduling services."""

from datetime import UTC, datetime


class SystemClock:
    """Clock backed by the real system time (always UTC-aware)."""

    def now(self) -> datetime:
        return datetime.now(UTC)
