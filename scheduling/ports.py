"""
Boundary contracts between the scheduling core and the outside world.

The core only talks to the calendar of record, the notification channel and
the wall clock through these protocols. Production adapters live in
scheduling/services/gcal_service.py and shared/telegram_client.py; tests use
in-memory fakes.
"""

from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from pydantic import BaseModel, Field


class CalendarEventDetails(BaseModel):
    """Payload used to create or update an event in the calendar of record."""

    summary: str
    start: datetime
    end: datetime
    description: str = ""
    lesson_id: UUID | None = None
    timezone: str = "UTC"


class CalendarEvent(BaseModel):
    """An event as reported by the calendar of record."""

    event_id: str
    start: datetime | None = None
    end: datetime | None = None
    cancelled: bool = False
    lesson_id: UUID | None = Field(
        default=None, description="Back-reference to the local lesson, if any"
    )
    summary: str = ""


class DeliveryReceipt(BaseModel):
    """Result of a successful send through the notification channel."""

    message_id: str | None = None
    delivered: bool = False


@runtime_checkable
class CalendarPort(Protocol):
    async def create_event(self, details: CalendarEventDetails) -> str:
        """Create an event and return its id."""
        ...

    async def update_event(self, event_id: str, details: CalendarEventDetails) -> None:
        ...

    async def delete_event(self, event_id: str) -> None:
        ...

    async def list_events(
        self, start: datetime, end: datetime, include_cancelled: bool = True
    ) -> list[CalendarEvent]:
        ...


@runtime_checkable
class NotifierPort(Protocol):
    async def send(
        self, recipient: str, text: str, options: dict | None = None
    ) -> DeliveryReceipt:
        """Send one message. Raises on failure."""
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...
