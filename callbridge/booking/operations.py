"""Booking operations behind the AI's calendar tools.

Each method takes a validated request record, talks to the calendar
through ``CalendarGateway`` and returns the JSON-ready dict that is sent
back to the AI.  Every failure leaves here as a ``BookingToolError``.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from callbridge.calendar_providers.base import EventDetails
from callbridge.calendar_providers.gateway import CalendarGateway
from callbridge.config import Settings
from callbridge.models.booking import (
    CancelEventRequest,
    CheckAvailabilityRequest,
    CreateAppointmentRequest,
    FindEventRequest,
    UpdateEventRequest,
)

from .errors import BOOKING_ERROR, BookingToolError, classify_booking_error
from .slot_finder import TimePreference, overlaps_busy, find_available_slots

log = logging.getLogger("callbridge.booking")

DEFAULT_SEARCH_DAYS = 7


def _utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def _localize(value: datetime, tz: ZoneInfo) -> datetime:
    """Naive request times are wall-clock times in the request timezone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


def _iso(value: datetime, tz: ZoneInfo) -> str:
    return value.astimezone(tz).isoformat()


def _to_minute(value: datetime) -> datetime:
    return value.astimezone(dt_timezone.utc).replace(second=0, microsecond=0)


class BookingOperations:
    """Availability checks and appointment CRUD for one calendar."""

    def __init__(
        self,
        gateway: CalendarGateway,
        settings: Settings,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateway = gateway
        self._settings = settings
        self._now = now

    def _timezone(self, requested: Optional[str]) -> tuple[str, ZoneInfo]:
        name = requested or self._settings.calendar_timezone
        return name, ZoneInfo(name)

    # ── check_availability ────────────────────────────────────────

    async def check_availability(self, request: CheckAvailabilityRequest) -> dict:
        tz_name, tz = self._timezone(request.timezone)
        duration = request.duration_minutes or self._settings.appt_duration_minutes
        buffer = timedelta(minutes=self._settings.appt_buffer_minutes)

        try:
            if request.start_iso is not None:
                start = _localize(request.start_iso, tz)
                end = (
                    _localize(request.end_iso, tz)
                    if request.end_iso is not None
                    else start + timedelta(minutes=duration)
                )
                busy = await self._gateway.get_availability(start - buffer, end + buffer, tz_name)
                free = not overlaps_busy(start, end, busy, buffer)
                log.info("Exact-time availability %s: %s", _iso(start, tz), free)
                slots = [{"startISO": _iso(start, tz), "endISO": _iso(end, tz)}] if free else []
                return {"slots": slots, "timezone": tz_name}

            if request.day_iso is not None:
                window_start = datetime.combine(request.day_iso, time(0), tzinfo=tz)
                window_end = window_start + timedelta(days=1)
            else:
                window_start = self._now().astimezone(tz)
                window_end = window_start + timedelta(days=DEFAULT_SEARCH_DAYS)

            start_hour = self._settings.business_start_hour
            end_hour = self._settings.business_end_hour
            if request.window is not None:
                if request.window.start_hour is not None:
                    start_hour = request.window.start_hour
                if request.window.end_hour is not None:
                    end_hour = request.window.end_hour

            busy = await self._gateway.get_availability(window_start, window_end, tz_name)
            found = find_available_slots(
                busy,
                window_start,
                window_end,
                duration_minutes=duration,
                buffer_minutes=self._settings.appt_buffer_minutes,
                timezone=tz_name,
                preference=TimePreference.NONE,
                business_start_hour=start_hour,
                business_end_hour=end_hour,
            )
        except Exception as exc:
            raise classify_booking_error(exc, "availability check") from exc

        log.info("Returning %d slot(s)", len(found))
        return {
            "slots": [{"startISO": _iso(s.start, tz), "endISO": _iso(s.end, tz)} for s in found],
            "timezone": tz_name,
        }

    # ── create_appointment ────────────────────────────────────────

    async def create_appointment(
        self, request: CreateAppointmentRequest, idempotency_source: str
    ) -> dict:
        tz_name, tz = self._timezone(request.timezone)
        start = _localize(request.start_iso, tz)
        end = _localize(request.end_iso, tz)
        summary = f"Caller requested: {request.reason.rstrip('.')}."
        description = "\n".join(
            [
                f"Name: {request.name}",
                f"Phone: {request.phone or 'unknown'}",
                f"Reason: {request.reason}",
                f"Summary: {summary}",
            ]
        )
        result = {
            "dryRun": self._settings.booking_dry_run,
            "created": False,
            "summary": summary,
            "startISO": _iso(start, tz),
            "endISO": _iso(end, tz),
            "timezone": tz_name,
        }

        if self._settings.booking_dry_run:
            log.info("Dry run: not creating event at %s", result["startISO"])
            return result

        details = EventDetails(
            title=f"Call Booking – {request.name}",
            description=description,
            timezone=tz_name,
            location="Phone call",
        )
        try:
            created = await self._gateway.create_event(start, end, details, idempotency_source)
        except Exception as exc:
            raise classify_booking_error(exc, "appointment creation") from exc

        if created is None or not created.event_id:
            log.error("Calendar returned no event id for %s", result["startISO"])
            raise BookingToolError(BOOKING_ERROR, "The calendar did not confirm the appointment.")

        log.info("Appointment created: %s", created.event_id)
        result.update(created=True, eventId=created.event_id, htmlLink=created.html_link)
        return result

    # ── find_event ────────────────────────────────────────────────

    async def find_appointment(self, request: FindEventRequest) -> dict:
        tz_name, tz = self._timezone(request.timezone)
        now = self._now()
        range_start = now
        range_end = now + timedelta(days=request.days_ahead)
        wanted: Optional[datetime] = None
        if request.start_iso is not None:
            wanted = _localize(request.start_iso, tz)
            range_start = min(range_start, wanted)
            range_end = max(range_end, wanted + timedelta(minutes=1))

        try:
            events = await self._gateway.list_events(range_start, range_end)
        except Exception as exc:
            raise classify_booking_error(exc, "appointment lookup") from exc

        if wanted is not None:
            events = [e for e in events if _to_minute(e.start) == _to_minute(wanted)]
        if request.name:
            needle = request.name.strip().lower()
            events = [
                e for e in events
                if needle in e.summary.lower() or needle in e.description.lower()
            ]

        return {
            "events": [
                {
                    "eventId": e.event_id,
                    "summary": e.summary,
                    "description": e.description,
                    "startISO": _iso(e.start, tz),
                    "endISO": _iso(e.end, tz),
                }
                for e in events
            ],
            "timezone": tz_name,
        }

    # ── update_event ──────────────────────────────────────────────

    async def update_appointment(self, request: UpdateEventRequest) -> dict:
        tz_name, tz = self._timezone(request.timezone)
        start = _localize(request.start_iso, tz)
        end = _localize(request.end_iso, tz)
        try:
            event = await self._gateway.update_event(
                request.event_id,
                start,
                end,
                tz_name,
                summary=request.summary,
                description=request.description,
            )
        except Exception as exc:
            raise classify_booking_error(exc, "appointment update") from exc

        return {
            "updated": True,
            "eventId": event.event_id or request.event_id,
            "startISO": _iso(event.start, tz),
            "endISO": _iso(event.end, tz),
            "timezone": tz_name,
        }

    # ── cancel_event ──────────────────────────────────────────────

    async def cancel_appointment(self, request: CancelEventRequest) -> dict:
        try:
            await self._gateway.cancel_event(request.event_id)
        except Exception as exc:
            raise classify_booking_error(exc, "appointment cancellation") from exc
        return {"cancelled": True, "eventId": request.event_id}
