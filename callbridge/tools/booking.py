"""Appointment tools: create, find, move and cancel calendar events."""

from __future__ import annotations

from callbridge.booking.operations import BookingOperations
from callbridge.models.booking import (
    CancelEventRequest,
    CreateAppointmentRequest,
    FindEventRequest,
    UpdateEventRequest,
)

from .base import BaseTool
from .calendar import CheckAvailabilityTool

_ISO = {"type": "string", "description": "ISO-8601 date-time."}
_TZ = {"type": "string", "description": "IANA timezone, e.g. America/Phoenix."}
_EVENT_ID = {"type": "string", "description": "Calendar event id from find_event."}


class CreateAppointmentTool(BaseTool):
    """Book an appointment once the caller has confirmed a slot."""

    def __init__(self, operations: BookingOperations) -> None:
        self._operations = operations

    @property
    def name(self) -> str:
        return "create_appointment"

    @property
    def description(self) -> str:
        return (
            "Create the appointment on the calendar after the caller confirmed "
            "the time. Only tell the caller it is booked if the result has "
            "created=true."
        )

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "startISO": _ISO,
                "endISO": _ISO,
                "name": {"type": "string", "description": "Caller's name."},
                "reason": {"type": "string", "description": "Reason for the visit."},
                "phone": {"type": "string", "description": "Callback number."},
                "timezone": _TZ,
            },
            "required": ["startISO", "endISO", "name", "reason"],
        }

    async def execute(self, request: CreateAppointmentRequest, session_key: str) -> dict:
        return await self._operations.create_appointment(request, idempotency_source=session_key)


class FindEventTool(BaseTool):
    """Look up an existing appointment by time and/or name."""

    def __init__(self, operations: BookingOperations) -> None:
        self._operations = operations

    @property
    def name(self) -> str:
        return "find_event"

    @property
    def description(self) -> str:
        return (
            "Find the caller's existing appointment before changing or "
            "cancelling it. Filter by exact start time, by name, or both."
        )

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "startISO": _ISO,
                "timezone": _TZ,
                "name": {"type": "string", "description": "Name on the booking."},
                "daysAhead": {
                    "type": "integer",
                    "description": "How many days ahead to search (default 30).",
                },
            },
            "required": [],
        }

    async def execute(self, request: FindEventRequest, session_key: str) -> dict:
        return await self._operations.find_appointment(request)


class UpdateEventTool(BaseTool):
    """Move an existing appointment."""

    def __init__(self, operations: BookingOperations) -> None:
        self._operations = operations

    @property
    def name(self) -> str:
        return "update_event"

    @property
    def description(self) -> str:
        return "Move an existing appointment to a new time the caller confirmed."

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "eventId": _EVENT_ID,
                "startISO": _ISO,
                "endISO": _ISO,
                "summary": {"type": "string"},
                "description": {"type": "string"},
                "timezone": _TZ,
            },
            "required": ["eventId", "startISO", "endISO"],
        }

    async def execute(self, request: UpdateEventRequest, session_key: str) -> dict:
        return await self._operations.update_appointment(request)


class CancelEventTool(BaseTool):
    """Cancel an existing appointment."""

    def __init__(self, operations: BookingOperations) -> None:
        self._operations = operations

    @property
    def name(self) -> str:
        return "cancel_event"

    @property
    def description(self) -> str:
        return "Cancel an existing appointment after the caller confirmed it."

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {"eventId": _EVENT_ID},
            "required": ["eventId"],
        }

    async def execute(self, request: CancelEventRequest, session_key: str) -> dict:
        return await self._operations.cancel_appointment(request)


def build_tool_registry(operations: BookingOperations) -> dict[str, BaseTool]:
    """All calendar tools keyed by the name the AI calls them by."""
    tools: list[BaseTool] = [
        CheckAvailabilityTool(operations),
        CreateAppointmentTool(operations),
        FindEventTool(operations),
        UpdateEventTool(operations),
        CancelEventTool(operations),
    ]
    return {tool.name: tool for tool in tools}
