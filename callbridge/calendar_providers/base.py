"""Abstract base class for calendar providers.

Defines the interface for free/busy queries and event CRUD.  Any calendar
backend (Google, Outlook, etc.) implements this ABC; the provider owns the
target calendar id, so callers never pass one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class CalendarNotConfiguredError(RuntimeError):
    """Raised when the provider has no usable credentials."""


@dataclass(frozen=True)
class BusyInterval:
    """A range reported by the calendar as already occupied."""

    start: datetime
    end: datetime


@dataclass
class EventDetails:
    """Descriptive fields for an event to be created."""

    title: str
    description: str
    timezone: str
    location: str = ""


@dataclass
class CreatedEvent:
    """What the calendar returned for a successful insert."""

    event_id: str
    html_link: str = ""


@dataclass
class CalendarEvent:
    """An existing event, as read back from the calendar."""

    event_id: str
    summary: str
    start: datetime
    end: datetime
    description: str = ""
    timezone: str = ""


class CalendarProvider(ABC):
    """Abstract calendar backend."""

    @abstractmethod
    async def get_busy_intervals(
        self, start: datetime, end: datetime, timezone: str
    ) -> list[BusyInterval]:
        """Return the busy intervals that overlap ``[start, end)``."""

    @abstractmethod
    async def create_event(
        self, start: datetime, end: datetime, details: EventDetails
    ) -> Optional[CreatedEvent]:
        """Insert an event.

        Returns:
            The created event reference, or ``None`` when the backend
            accepted the request without returning an identifier.
        """

    @abstractmethod
    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Return single (expanded) events starting inside ``[start, end)``."""

    @abstractmethod
    async def update_event(
        self,
        event_id: str,
        start: datetime,
        end: datetime,
        timezone: str,
        summary: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CalendarEvent:
        """Move an event and optionally replace its summary/description."""

    @abstractmethod
    async def cancel_event(self, event_id: str) -> None:
        """Delete an event.  Raises on failure."""
