"""Calendar provider abstractions and implementations."""

from .base import (
    BusyInterval,
    CalendarEvent,
    CalendarNotConfiguredError,
    CalendarProvider,
    CreatedEvent,
    EventDetails,
)

__all__ = [
    "BusyInterval",
    "CalendarEvent",
    "CalendarNotConfiguredError",
    "CalendarProvider",
    "CreatedEvent",
    "EventDetails",
]
