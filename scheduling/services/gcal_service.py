"""
Google Calendar adapter - CalendarPort over the Google Calendar v3 API.

The teacher's Google Calendar is the calendar of record. Lessons are pushed
to it after the database commit, and CalendarReconciler reads it back to
pick up edits the teacher made directly in Google Calendar.

Each event created here stores the lesson UUID in
extendedProperties.private.lesson_id, which is the back-reference the
reconciler uses to find the local lesson.

Blocking googleapiclient calls run in the default executor. Transient HTTP
errors (429/5xx, network) are retried with tenacity exponential backoff;
every call is wrapped by the google_calendar circuit breaker.
"""

import asyncio
import logging
from datetime import date, datetime, time
from typing import Any, Callable
from uuid import UUID
from zoneinfo import ZoneInfo

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from scheduling.errors import CalendarSyncError
from scheduling.ports import CalendarEvent, CalendarEventDetails
from shared.circuit_breaker import calendar_breaker, call_with_breaker
from shared.config import Settings, get_settings
from shared.resilient_api import is_retryable_error

logger = logging.getLogger(__name__)

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]

# Lesson events use the "Sage" color in Google Calendar
LESSON_COLOR_ID = "2"


def parse_gcal_datetime(dt_dict: dict | None, tz: ZoneInfo) -> datetime | None:
    """Parse a Google Calendar start/end dict to an aware datetime."""
    if not dt_dict:
        return None

    if "dateTime" in dt_dict:
        try:
            dt = datetime.fromisoformat(dt_dict["dateTime"].replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable dateTime in calendar event: {dt_dict['dateTime']!r}")
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=tz)
        return dt

    if "date" in dt_dict:
        # All-day event
        try:
            d = date.fromisoformat(dt_dict["date"])
        except ValueError:
            return None
        return datetime.combine(d, time.min, tzinfo=tz)

    return None


def event_from_gcal(item: dict[str, Any], tz: ZoneInfo) -> CalendarEvent:
    """Map a Google Calendar event resource to a CalendarEvent."""
    private = item.get("extendedProperties", {}).get("private", {})
    lesson_ref = private.get("lesson_id")
    try:
        lesson_id = UUID(lesson_ref) if lesson_ref else None
    except ValueError:
        lesson_id = None

    return CalendarEvent(
        event_id=item["id"],
        start=parse_gcal_datetime(item.get("start"), tz),
        end=parse_gcal_datetime(item.get("end"), tz),
        cancelled=item.get("status") == "cancelled",
        lesson_id=lesson_id,
        summary=item.get("summary", ""),
    )


class GoogleCalendarAdapter:
    """CalendarPort implementation backed by a service-account Google Calendar."""

    def __init__(self, settings: Settings | None = None, service: Any = None):
        self.settings = settings or get_settings()
        self.calendar_id = self.settings.GOOGLE_CALENDAR_ID
        self.timezone = ZoneInfo(self.settings.TIMEZONE)
        self._service = service

    def _get_calendar_service(self):
        """Create (once) the Google Calendar API service instance."""
        if self._service is None:
            try:
                credentials = service_account.Credentials.from_service_account_file(
                    self.settings.GOOGLE_SERVICE_ACCOUNT_JSON,
                    scopes=CALENDAR_SCOPES,
                )
                self._service = build(
                    "calendar", "v3", credentials=credentials, cache_discovery=False
                )
            except Exception as e:
                logger.error(f"Failed to create Google Calendar service: {e}")
                raise CalendarSyncError(f"Google Calendar unavailable: {e}") from e
        return self._service

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception(is_retryable_error),
        reraise=True,
    )
    async def _execute(self, build_request: Callable[[Any], Any]) -> Any:
        """Run `build_request(service).execute()` in the executor, with retries."""
        service = self._get_calendar_service()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: build_request(service).execute())

    async def _call(self, operation: str, build_request: Callable[[Any], Any]) -> Any:
        try:
            return await call_with_breaker(calendar_breaker, self._execute, build_request)
        except HttpError as e:
            logger.error(f"Google Calendar API error during {operation}: {e}")
            raise CalendarSyncError(
                f"Google Calendar {operation} failed: HTTP {e.resp.status}",
                {"status": e.resp.status},
            ) from e

    def _event_body(self, details: CalendarEventDetails) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": details.summary,
            "description": details.description,
            "start": {
                "dateTime": details.start.astimezone(self.timezone).isoformat(),
                "timeZone": self.settings.TIMEZONE,
            },
            "end": {
                "dateTime": details.end.astimezone(self.timezone).isoformat(),
                "timeZone": self.settings.TIMEZONE,
            },
            "colorId": LESSON_COLOR_ID,
        }
        if details.lesson_id:
            body["extendedProperties"] = {"private": {"lesson_id": str(details.lesson_id)}}
        return body

    async def create_event(self, details: CalendarEventDetails) -> str:
        body = self._event_body(details)
        event = await self._call(
            "create_event",
            lambda service: service.events().insert(calendarId=self.calendar_id, body=body),
        )
        event_id = event.get("id")
        logger.info(f"Created Google Calendar event {event_id}", extra={"lesson_id": details.lesson_id})
        return event_id

    async def update_event(self, event_id: str, details: CalendarEventDetails) -> None:
        body = self._event_body(details)
        await self._call(
            "update_event",
            lambda service: service.events().patch(
                calendarId=self.calendar_id, eventId=event_id, body=body
            ),
        )
        logger.info(f"Updated Google Calendar event {event_id}", extra={"lesson_id": details.lesson_id})

    async def delete_event(self, event_id: str) -> None:
        try:
            await self._call(
                "delete_event",
                lambda service: service.events().delete(
                    calendarId=self.calendar_id, eventId=event_id
                ),
            )
        except CalendarSyncError as e:
            # Already gone (404) or already cancelled (410): nothing to do
            if e.details.get("status") in (404, 410):
                logger.info(f"Google Calendar event {event_id} already deleted")
                return
            raise
        logger.info(f"Deleted Google Calendar event {event_id}")

    async def list_events(
        self, start: datetime, end: datetime, include_cancelled: bool = True
    ) -> list[CalendarEvent]:
        """List single (expanded) events between `start` and `end`."""
        events: list[CalendarEvent] = []
        page_token: str | None = None

        while True:
            response = await self._call(
                "list_events",
                lambda service, token=page_token: service.events().list(
                    calendarId=self.calendar_id,
                    timeMin=start.isoformat(),
                    timeMax=end.isoformat(),
                    showDeleted=include_cancelled,
                    singleEvents=True,
                    maxResults=250,
                    pageToken=token,
                ),
            )
            for item in response.get("items", []):
                events.append(event_from_gcal(item, self.timezone))

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info(
            f"Calendar {self.calendar_id[-10:]}: fetched {len(events)} events "
            f"between {start.date().isoformat()} and {end.date().isoformat()}"
        )
        return events
