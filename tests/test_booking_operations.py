"""Tests for BookingOperations against a fake calendar."""

from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from callbridge.booking.errors import (
    BOOKING_ERROR,
    BOOKING_NOT_CONFIGURED,
    BookingToolError,
    classify_booking_error,
    is_config_error,
)
from callbridge.booking.operations import BookingOperations
from callbridge.calendar_providers.base import (
    BusyInterval,
    CalendarEvent,
    CalendarNotConfiguredError,
    CreatedEvent,
)
from callbridge.calendar_providers.gateway import CalendarGateway
from callbridge.models.booking import (
    AvailabilityWindow,
    CancelEventRequest,
    CheckAvailabilityRequest,
    CreateAppointmentRequest,
    FindEventRequest,
    UpdateEventRequest,
)

from conftest import make_settings

PHX = ZoneInfo("America/Phoenix")
# Monday 2025-03-10 08:00 in Phoenix
NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


async def no_sleep(_delay):
    return None


def make_operations(provider, **overrides):
    settings = make_settings(**overrides)
    gateway = CalendarGateway(provider, sleep=no_sleep)
    return BookingOperations(gateway, settings, now=lambda: NOW)


@pytest.fixture
def operations(provider):
    return make_operations(provider)


def create_request(**overrides):
    values = {
        "startISO": "2025-03-11T10:00:00-07:00",
        "endISO": "2025-03-11T10:30:00-07:00",
        "name": "Ana Ruiz",
        "reason": "Leaky faucet",
        "phone": "+15205550100",
    }
    values.update(overrides)
    return CreateAppointmentRequest.model_validate(values)


# ── Error classification ───────────────────────────────────────────


class TestErrorClassification:
    def test_not_configured_error(self):
        assert is_config_error(CalendarNotConfiguredError("Google Calendar credentials are missing"))

    def test_refresh_error(self):
        assert is_config_error(RefreshError("invalid_grant: Token has been expired"))

    def test_unauthorized_http_error(self):
        assert is_config_error(HttpError(SimpleNamespace(status=401, reason="Unauthorized"), b"{}"))

    def test_message_heuristic(self):
        assert is_config_error(RuntimeError("invalid_client"))
        assert not is_config_error(RuntimeError("socket closed"))

    def test_classify(self):
        err = classify_booking_error(RuntimeError("socket closed"), "appointment creation")
        assert err.code == BOOKING_ERROR
        assert err.to_result() == {
            "error": {"code": "booking_error", "message": "Could not complete appointment creation."}
        }
        assert classify_booking_error(RefreshError("x"), "lookup").code == BOOKING_NOT_CONFIGURED

    def test_classify_passes_tool_errors_through(self):
        original = BookingToolError(BOOKING_ERROR, "nope")
        assert classify_booking_error(original, "anything") is original


# ── check_availability ─────────────────────────────────────────────


class TestCheckAvailability:
    @pytest.mark.asyncio
    async def test_day_search(self, operations, provider):
        result = await operations.check_availability(
            CheckAvailabilityRequest.model_validate({"dayISO": "2025-03-11"})
        )
        assert result["timezone"] == "America/Phoenix"
        assert result["slots"] == [
            {"startISO": "2025-03-11T09:00:00-07:00", "endISO": "2025-03-11T09:30:00-07:00"},
            {"startISO": "2025-03-11T09:15:00-07:00", "endISO": "2025-03-11T09:45:00-07:00"},
        ]
        start, end, tz = provider.busy_queries[0]
        assert start == datetime(2025, 3, 11, 0, 0, tzinfo=PHX)
        assert end - start == timedelta(days=1)

    @pytest.mark.asyncio
    async def test_default_window_starts_now(self, operations, provider):
        result = await operations.check_availability(CheckAvailabilityRequest())
        # 08:00 local, so the first slot is at opening time today
        assert result["slots"][0]["startISO"] == "2025-03-10T09:00:00-07:00"
        start, end, _ = provider.busy_queries[0]
        assert start == NOW
        assert end - start == timedelta(days=7)

    @pytest.mark.asyncio
    async def test_busy_and_buffer_respected(self, operations, provider):
        provider.busy = [
            BusyInterval(datetime(2025, 3, 11, 9, 0, tzinfo=PHX), datetime(2025, 3, 11, 10, 0, tzinfo=PHX))
        ]
        result = await operations.check_availability(
            CheckAvailabilityRequest.model_validate({"dayISO": "2025-03-11"})
        )
        assert result["slots"][0]["startISO"] == "2025-03-11T10:15:00-07:00"

    @pytest.mark.asyncio
    async def test_window_and_duration_override(self, operations):
        request = CheckAvailabilityRequest(
            day_iso=date(2025, 3, 11),
            window=AvailabilityWindow(start_hour=14, end_hour=16),
            duration_minutes=60,
        )
        result = await operations.check_availability(request)
        assert result["slots"][0] == {
            "startISO": "2025-03-11T14:00:00-07:00",
            "endISO": "2025-03-11T15:00:00-07:00",
        }

    @pytest.mark.asyncio
    async def test_exact_time_free(self, operations, provider):
        result = await operations.check_availability(
            CheckAvailabilityRequest.model_validate({"startISO": "2025-03-11T13:00:00"})
        )
        assert result["slots"] == [
            {"startISO": "2025-03-11T13:00:00-07:00", "endISO": "2025-03-11T13:30:00-07:00"}
        ]
        start, end, _ = provider.busy_queries[0]
        assert start == datetime(2025, 3, 11, 12, 50, tzinfo=PHX)
        assert end == datetime(2025, 3, 11, 13, 40, tzinfo=PHX)

    @pytest.mark.asyncio
    async def test_exact_time_busy(self, operations, provider):
        provider.busy = [
            BusyInterval(datetime(2025, 3, 11, 13, 30, tzinfo=PHX), datetime(2025, 3, 11, 14, 0, tzinfo=PHX))
        ]
        result = await operations.check_availability(
            CheckAvailabilityRequest.model_validate({"startISO": "2025-03-11T13:00:00-07:00"})
        )
        assert result["slots"] == []

    @pytest.mark.asyncio
    async def test_other_timezone(self, operations):
        result = await operations.check_availability(
            CheckAvailabilityRequest.model_validate({"dayISO": "2025-03-11", "timezone": "America/New_York"})
        )
        assert result["timezone"] == "America/New_York"
        assert result["slots"][0]["startISO"] == "2025-03-11T09:00:00-04:00"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, operations, provider):
        async def broken(*args):
            raise CalendarNotConfiguredError("Google Calendar credentials are missing")

        provider.get_busy_intervals = broken
        with pytest.raises(BookingToolError) as excinfo:
            await operations.check_availability(CheckAvailabilityRequest())
        assert excinfo.value.code == BOOKING_NOT_CONFIGURED


# ── create_appointment ─────────────────────────────────────────────


class TestCreateAppointment:
    @pytest.mark.asyncio
    async def test_creates_event(self, operations, provider):
        result = await operations.create_appointment(create_request(), idempotency_source="CA1")

        assert result == {
            "dryRun": False,
            "created": True,
            "summary": "Caller requested: Leaky faucet.",
            "startISO": "2025-03-11T10:00:00-07:00",
            "endISO": "2025-03-11T10:30:00-07:00",
            "timezone": "America/Phoenix",
            "eventId": "evt_1",
            "htmlLink": "https://cal.example/evt_1",
        }
        _, _, details = provider.created[0]
        assert details.title == "Call Booking – Ana Ruiz"
        assert details.location == "Phone call"
        assert "Phone: +15205550100" in details.description
        assert "Summary: Caller requested: Leaky faucet." in details.description

    @pytest.mark.asyncio
    async def test_reason_period_not_doubled(self, operations):
        result = await operations.create_appointment(create_request(reason="Broken pipe."), "CA1")
        assert result["summary"] == "Caller requested: Broken pipe."

    @pytest.mark.asyncio
    async def test_unknown_phone(self, operations, provider):
        await operations.create_appointment(create_request(phone=None), "CA1")
        assert "Phone: unknown" in provider.created[0][2].description

    @pytest.mark.asyncio
    async def test_dry_run_does_not_touch_calendar(self, provider):
        operations = make_operations(provider, booking_dry_run=True)
        result = await operations.create_appointment(create_request(), "CA1")
        assert result["dryRun"] is True
        assert result["created"] is False
        assert "eventId" not in result
        assert provider.created == []

    @pytest.mark.asyncio
    async def test_missing_event_id(self, operations, provider):
        provider.create_result = CreatedEvent("")
        with pytest.raises(BookingToolError) as excinfo:
            await operations.create_appointment(create_request(), "CA1")
        assert excinfo.value.code == BOOKING_ERROR

    @pytest.mark.asyncio
    async def test_provider_failure(self, operations, provider):
        provider.create_error = RuntimeError("connection reset")
        with pytest.raises(BookingToolError) as excinfo:
            await operations.create_appointment(create_request(), "CA1")
        assert excinfo.value.code == BOOKING_ERROR

    @pytest.mark.asyncio
    async def test_naive_times_use_calendar_timezone(self, operations, provider):
        request = create_request(startISO="2025-03-11T10:00:00", endISO="2025-03-11T10:30:00")
        await operations.create_appointment(request, "CA1")
        start, _, _ = provider.created[0]
        assert start == datetime(2025, 3, 11, 17, 0, tzinfo=timezone.utc)


# ── find / update / cancel ─────────────────────────────────────────


class TestManageAppointments:
    @pytest.fixture
    def booked(self, provider):
        provider.events = [
            CalendarEvent(
                event_id="evt_1",
                summary="Call Booking – Ana Ruiz",
                start=datetime(2025, 3, 11, 17, 0, tzinfo=timezone.utc),
                end=datetime(2025, 3, 11, 17, 30, tzinfo=timezone.utc),
                description="Name: Ana Ruiz",
            ),
            CalendarEvent(
                event_id="evt_2",
                summary="Call Booking – Bob Lee",
                start=datetime(2025, 3, 12, 17, 0, tzinfo=timezone.utc),
                end=datetime(2025, 3, 12, 17, 30, tzinfo=timezone.utc),
            ),
        ]
        return provider

    @pytest.mark.asyncio
    async def test_find_by_time(self, operations, booked):
        result = await operations.find_appointment(
            FindEventRequest.model_validate({"startISO": "2025-03-11T10:00:00-07:00"})
        )
        assert [e["eventId"] for e in result["events"]] == ["evt_1"]
        assert result["events"][0]["startISO"] == "2025-03-11T10:00:00-07:00"

    @pytest.mark.asyncio
    async def test_find_by_name(self, operations, booked):
        result = await operations.find_appointment(FindEventRequest(name="bob"))
        assert [e["eventId"] for e in result["events"]] == ["evt_2"]

    @pytest.mark.asyncio
    async def test_find_nothing(self, operations, booked):
        result = await operations.find_appointment(FindEventRequest(name="Carla"))
        assert result["events"] == []

    @pytest.mark.asyncio
    async def test_update(self, operations, provider):
        request = UpdateEventRequest.model_validate(
            {"eventId": "evt_1", "startISO": "2025-03-12T11:00:00", "endISO": "2025-03-12T11:30:00"}
        )
        result = await operations.update_appointment(request)
        assert result == {
            "updated": True,
            "eventId": "evt_1",
            "startISO": "2025-03-12T11:00:00-07:00",
            "endISO": "2025-03-12T11:30:00-07:00",
            "timezone": "America/Phoenix",
        }
        assert provider.updated[0][0] == "evt_1"

    @pytest.mark.asyncio
    async def test_cancel(self, operations, provider):
        result = await operations.cancel_appointment(CancelEventRequest(event_id="evt_1"))
        assert result == {"cancelled": True, "eventId": "evt_1"}
        assert provider.cancelled == ["evt_1"]

    @pytest.mark.asyncio
    async def test_cancel_failure(self, operations, provider):
        async def broken(event_id):
            raise RefreshError("invalid_grant")

        provider.cancel_event = broken
        with pytest.raises(BookingToolError) as excinfo:
            await operations.cancel_appointment(CancelEventRequest(event_id="evt_1"))
        assert excinfo.value.code == BOOKING_NOT_CONFIGURED
