"""Google Calendar provider implementation.

Talks to the Calendar API v3 with either OAuth refresh-token credentials
(``GOOGLE_CLIENT_ID`` / ``GOOGLE_CLIENT_SECRET`` / ``GOOGLE_REFRESH_TOKEN``)
or a service-account JSON key (``GOOGLE_SERVICE_ACCOUNT_JSON``).

The API client is built lazily on first use: a server without calendar
credentials still starts, and the first booking tool call surfaces a
``CalendarNotConfiguredError`` that the booking layer reports as
``booking_not_configured``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from callbridge.config import Settings

from .base import (
    BusyInterval,
    CalendarEvent,
    CalendarNotConfiguredError,
    CalendarProvider,
    CreatedEvent,
    EventDetails,
)

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _parse_event_time(value: dict[str, Any]) -> datetime:
    """Parse an event ``start``/``end`` object (timed or all-day)."""
    if value.get("dateTime"):
        return datetime.fromisoformat(value["dateTime"])
    return datetime.fromisoformat(value["date"]).replace(tzinfo=timezone.utc)


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._calendar_id = settings.google_calendar_id
        self._service: Any = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_credentials(self) -> Any:
        s = self._settings
        if s.google_refresh_token:
            missing = [
                name
                for name, value in (
                    ("GOOGLE_CLIENT_ID", s.google_client_id),
                    ("GOOGLE_CLIENT_SECRET", s.google_client_secret),
                )
                if not value
            ]
            if missing:
                raise CalendarNotConfiguredError(f"{', '.join(missing)} is missing")
            return Credentials(
                token=None,
                refresh_token=s.google_refresh_token,
                client_id=s.google_client_id,
                client_secret=s.google_client_secret,
                token_uri=TOKEN_URI,
                scopes=SCOPES,
            )
        if s.google_service_account_json:
            return service_account.Credentials.from_service_account_file(
                s.google_service_account_json, scopes=SCOPES
            )
        raise CalendarNotConfiguredError("Google Calendar credentials are missing")

    def _get_service(self) -> Any:
        if self._service is None:
            self._service = build(
                "calendar",
                "v3",
                credentials=self._build_credentials(),
                cache_discovery=False,
            )
        return self._service

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    def _to_event(self, item: dict[str, Any]) -> CalendarEvent:
        return CalendarEvent(
            event_id=item["id"],
            summary=item.get("summary", ""),
            description=item.get("description", ""),
            start=_parse_event_time(item["start"]),
            end=_parse_event_time(item["end"]),
            timezone=item["start"].get("timeZone", ""),
        )

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def get_busy_intervals(
        self, start: datetime, end: datetime, timezone: str
    ) -> list[BusyInterval]:
        """Query the freebusy API for the provider's calendar."""
        service = self._get_service()
        body = {
            "timeMin": self._to_rfc3339(start),
            "timeMax": self._to_rfc3339(end),
            "timeZone": timezone,
            "items": [{"id": self._calendar_id}],
        }

        response = await self._run_in_executor(
            service.freebusy().query(body=body).execute
        )

        busy_raw: list[dict] = (
            response.get("calendars", {}).get(self._calendar_id, {}).get("busy", [])
        )

        busy = [
            BusyInterval(
                start=datetime.fromisoformat(item["start"]),
                end=datetime.fromisoformat(item["end"]),
            )
            for item in busy_raw
            if item.get("start") and item.get("end")
        ]
        busy.sort(key=lambda b: b.start)
        return busy

    async def create_event(
        self, start: datetime, end: datetime, details: EventDetails
    ) -> Optional[CreatedEvent]:
        """Insert an event into the calendar."""
        service = self._get_service()
        body: dict[str, Any] = {
            "summary": details.title,
            "description": details.description,
            "start": {"dateTime": self._to_rfc3339(start), "timeZone": details.timezone},
            "end": {"dateTime": self._to_rfc3339(end), "timeZone": details.timezone},
        }
        if details.location:
            body["location"] = details.location

        result = await self._run_in_executor(
            service.events().insert(calendarId=self._calendar_id, body=body).execute
        )

        event_id = (result or {}).get("id")
        if not event_id:
            logger.warning("Calendar insert returned no event id on %s", self._calendar_id)
            return None

        logger.info("Created event %s on calendar %s", event_id, self._calendar_id)
        return CreatedEvent(event_id=event_id, html_link=result.get("htmlLink", ""))

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        service = self._get_service()
        response = await self._run_in_executor(
            service.events()
            .list(
                calendarId=self._calendar_id,
                timeMin=self._to_rfc3339(start),
                timeMax=self._to_rfc3339(end),
                singleEvents=True,
                orderBy="startTime",
                maxResults=250,
            )
            .execute
        )
        return [
            self._to_event(item)
            for item in response.get("items", [])
            if item.get("status") != "cancelled"
        ]

    async def update_event(
        self,
        event_id: str,
        start: datetime,
        end: datetime,
        timezone: str,
        summary: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CalendarEvent:
        """Patch an event's time window (and optionally its text)."""
        service = self._get_service()
        body: dict[str, Any] = {
            "start": {"dateTime": self._to_rfc3339(start), "timeZone": timezone},
            "end": {"dateTime": self._to_rfc3339(end), "timeZone": timezone},
        }
        if summary is not None:
            body["summary"] = summary
        if description is not None:
            body["description"] = description

        result = await self._run_in_executor(
            service.events()
            .patch(calendarId=self._calendar_id, eventId=event_id, body=body)
            .execute
        )
        logger.info("Updated event %s on calendar %s", event_id, self._calendar_id)
        return self._to_event(result)

    async def cancel_event(self, event_id: str) -> None:
        """Delete an event from the calendar."""
        service = self._get_service()
        await self._run_in_executor(
            service.events().delete(calendarId=self._calendar_id, eventId=event_id).execute
        )
        logger.info("Cancelled event %s on calendar %s", event_id, self._calendar_id)
