"""Check-availability tool for the receptionist.

The AI calls ``check_availability`` either for an exact time the caller
asked about (``startISO``) or for a day / the coming week, and receives
at most two open slots.
"""

from __future__ import annotations

from callbridge.booking.operations import BookingOperations
from callbridge.models.booking import CheckAvailabilityRequest

from .base import BaseTool


class CheckAvailabilityTool(BaseTool):
    """Return open appointment slots from the calendar."""

    def __init__(self, operations: BookingOperations) -> None:
        self._operations = operations

    @property
    def name(self) -> str:
        return "check_availability"

    @property
    def description(self) -> str:
        return (
            "Check the calendar for open appointment times. Pass startISO to "
            "check one exact time, or dayISO for a single day; with neither, "
            "the next 7 days are searched. Returns at most two slots."
        )

    @property
    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "dayISO": {
                    "type": "string",
                    "description": "Day to search, YYYY-MM-DD.",
                },
                "startISO": {
                    "type": "string",
                    "description": "Exact start time to check, ISO-8601.",
                },
                "endISO": {
                    "type": "string",
                    "description": "End of the exact time to check, ISO-8601.",
                },
                "timezone": {
                    "type": "string",
                    "description": "IANA timezone, e.g. America/Phoenix.",
                },
                "window": {
                    "type": "object",
                    "description": "Override business hours for this search.",
                    "properties": {
                        "startHour": {"type": "integer"},
                        "endHour": {"type": "integer"},
                    },
                },
                "durationMinutes": {
                    "type": "integer",
                    "description": "Appointment length in minutes.",
                },
            },
            "required": [],
        }

    async def execute(self, request: CheckAvailabilityRequest, session_key: str) -> dict:
        return await self._operations.check_availability(request)
