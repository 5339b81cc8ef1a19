"""Pydantic request records for the booking tools.

The realtime AI sends tool arguments as a JSON string (or, occasionally,
an already-decoded object).  ``parse_tool_request`` turns that payload
into exactly one validated record per tool name, or raises
``ToolRequestError`` with an ``invalid_arguments`` / ``unknown_tool`` code.
Field aliases match the camelCase names the AI is given in the tool
schemas.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

INVALID_ARGUMENTS = "invalid_arguments"
UNKNOWN_TOOL = "unknown_tool"


class ToolRequestError(Exception):
    """A tool call that never reached the booking layer."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_result(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


def _check_order(start: datetime, end: datetime) -> None:
    if (start.tzinfo is None) != (end.tzinfo is None):
        raise ValueError("startISO and endISO must both include a UTC offset, or neither")
    if end <= start:
        raise ValueError("endISO must be after startISO")


class ToolRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("timezone", mode="after", check_fields=False)
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value


class AvailabilityWindow(BaseModel):
    """Business-hour override for one availability query."""

    model_config = ConfigDict(populate_by_name=True)

    start_hour: Optional[int] = Field(None, alias="startHour", ge=0, le=23)
    end_hour: Optional[int] = Field(None, alias="endHour", ge=1, le=24)


class CheckAvailabilityRequest(ToolRequest):
    day_iso: Optional[date] = Field(None, alias="dayISO")
    start_iso: Optional[datetime] = Field(None, alias="startISO")
    end_iso: Optional[datetime] = Field(None, alias="endISO")
    timezone: Optional[str] = None
    window: Optional[AvailabilityWindow] = None
    duration_minutes: Optional[int] = Field(None, alias="durationMinutes", gt=0, le=480)

    @field_validator("day_iso", mode="before")
    @classmethod
    def _day_from_timestamp(cls, value: Any) -> Any:
        # "2025-03-10T00:00:00Z" is accepted as the day it names.
        if isinstance(value, str) and len(value) > 10:
            return value[:10]
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "CheckAvailabilityRequest":
        if self.end_iso is not None and self.start_iso is None:
            raise ValueError("endISO requires startISO")
        if self.start_iso and self.end_iso:
            _check_order(self.start_iso, self.end_iso)
        w = self.window
        if w and w.start_hour is not None and w.end_hour is not None and w.end_hour <= w.start_hour:
            raise ValueError("window.endHour must be after window.startHour")
        return self


class CreateAppointmentRequest(ToolRequest):
    start_iso: datetime = Field(alias="startISO")
    end_iso: datetime = Field(alias="endISO")
    name: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    phone: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator("name", "reason", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_range(self) -> "CreateAppointmentRequest":
        _check_order(self.start_iso, self.end_iso)
        return self


class FindEventRequest(ToolRequest):
    start_iso: Optional[datetime] = Field(None, alias="startISO")
    timezone: Optional[str] = None
    name: Optional[str] = None
    days_ahead: int = Field(30, alias="daysAhead", ge=1, le=365)


class UpdateEventRequest(ToolRequest):
    event_id: str = Field(alias="eventId", min_length=1)
    start_iso: datetime = Field(alias="startISO")
    end_iso: datetime = Field(alias="endISO")
    summary: Optional[str] = None
    description: Optional[str] = None
    timezone: Optional[str] = None

    @model_validator(mode="after")
    def _check_range(self) -> "UpdateEventRequest":
        _check_order(self.start_iso, self.end_iso)
        return self


class CancelEventRequest(ToolRequest):
    event_id: str = Field(alias="eventId", min_length=1)


TOOL_REQUEST_MODELS: dict[str, type[ToolRequest]] = {
    "check_availability": CheckAvailabilityRequest,
    "create_appointment": CreateAppointmentRequest,
    "find_event": FindEventRequest,
    "update_event": UpdateEventRequest,
    "cancel_event": CancelEventRequest,
}


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def parse_tool_request(name: str, arguments: Any) -> ToolRequest:
    """Validate a tool call's arguments into its request record."""
    model = TOOL_REQUEST_MODELS.get(name)
    if model is None:
        raise ToolRequestError(UNKNOWN_TOOL, f"Unknown tool {name!r}.")

    if arguments is None or arguments == "":
        payload: Any = {}
    elif isinstance(arguments, (str, bytes)):
        try:
            payload = json.loads(arguments)
        except ValueError:
            raise ToolRequestError(INVALID_ARGUMENTS, "Arguments are not valid JSON.")
    else:
        payload = arguments

    if not isinstance(payload, dict):
        raise ToolRequestError(INVALID_ARGUMENTS, "Arguments must be a JSON object.")

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ToolRequestError(INVALID_ARGUMENTS, _describe(exc)) from None
