"""Shared fakes for the call bridge tests."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import pytest

from callbridge.calendar_providers.base import (
    BusyInterval,
    CalendarEvent,
    CalendarProvider,
    CreatedEvent,
    EventDetails,
)
from callbridge.channels.base import MediaTransport
from callbridge.config import Settings


def make_settings(**overrides) -> Settings:
    values = {
        "openai_api_key": "sk-test",
        "calendar_timezone": "America/Phoenix",
        "twilio_account_sid": "",
        "twilio_auth_token": "",
        "public_base_url": "",
        "owner_notify_number": "",
        "database_url": "",
        "coach_admin_key": "",
        "booking_dry_run": False,
        "enable_ring_then_ai": False,
        "debug": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCalendarProvider(CalendarProvider):
    """In-memory provider that records every call."""

    def __init__(self) -> None:
        self.busy: list[BusyInterval] = []
        self.events: list[CalendarEvent] = []
        self.busy_queries: list[tuple[datetime, datetime, str]] = []
        self.created: list[tuple[datetime, datetime, EventDetails]] = []
        self.updated: list[tuple] = []
        self.cancelled: list[str] = []
        self.create_result: Optional[CreatedEvent] = CreatedEvent("evt_1", "https://cal.example/evt_1")
        self.create_error: Optional[BaseException] = None
        self.gate: Optional[asyncio.Event] = None

    async def get_busy_intervals(self, start, end, timezone):
        self.busy_queries.append((start, end, timezone))
        return list(self.busy)

    async def create_event(self, start, end, details):
        self.created.append((start, end, details))
        if self.gate is not None:
            await self.gate.wait()
        if self.create_error is not None:
            raise self.create_error
        return self.create_result

    async def list_events(self, start, end):
        return list(self.events)

    async def update_event(self, event_id, start, end, timezone, summary=None, description=None):
        self.updated.append((event_id, start, end, timezone, summary, description))
        return CalendarEvent(
            event_id=event_id,
            summary=summary or "Call Booking – Ana",
            start=start,
            end=end,
            description=description or "",
            timezone=timezone,
        )

    async def cancel_event(self, event_id):
        self.cancelled.append(event_id)


class FakeRealtime:
    """Stands in for RealtimeConnection; events are pushed by the test."""

    def __init__(self, fail: bool = False, gate: Optional[asyncio.Event] = None) -> None:
        self.sent: list[dict] = []
        self.fail = fail
        self.gate = gate
        self.connected = False
        self.closed = False
        self._open = False
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise ConnectionError("realtime unavailable")
        self._open = True
        self.connected = True

    async def send(self, event: dict) -> bool:
        if not self._open:
            return False
        self.sent.append(event)
        return True

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def push(self, event: Optional[dict]) -> None:
        self._queue.put_nowait(event)

    async def close(self) -> None:
        self._open = False
        self.closed = True
        self._queue.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [e["type"] for e in self.sent]


class FakeTransport(MediaTransport):
    def __init__(self, events=()) -> None:
        self._events = list(events)
        self.audio: list[tuple[str, str]] = []
        self.clears: list[str] = []
        self.closed = False

    async def events(self):
        for event in self._events:
            yield event

    async def send_audio(self, stream_id, payload):
        self.audio.append((stream_id, payload))

    async def send_clear(self, stream_id):
        self.clears.append(stream_id)

    async def close(self):
        self.closed = True


class FakeMessenger:
    def __init__(self, fail: bool = False) -> None:
        self.sms: list[tuple[str, str]] = []
        self.calls: list[tuple[str, str]] = []
        self.fail = fail

    async def send_sms(self, to: str, body: str) -> None:
        if self.fail:
            raise RuntimeError("twilio down")
        self.sms.append((to, body))

    async def place_coach_call(self, user_id: str, phone_e164: str) -> str:
        if self.fail:
            raise RuntimeError("twilio down")
        self.calls.append((user_id, phone_e164))
        return f"CA{len(self.calls):04d}"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()
