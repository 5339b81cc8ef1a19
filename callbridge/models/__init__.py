"""Data models for the call bridge."""

from .booking import (
    CancelEventRequest,
    CheckAvailabilityRequest,
    CreateAppointmentRequest,
    FindEventRequest,
    ToolRequest,
    ToolRequestError,
    UpdateEventRequest,
    parse_tool_request,
)
from .caller import CallMode, CallSummary, CoachingMetrics

__all__ = [
    "CallMode",
    "CallSummary",
    "CancelEventRequest",
    "CheckAvailabilityRequest",
    "CoachingMetrics",
    "CreateAppointmentRequest",
    "FindEventRequest",
    "ToolRequest",
    "ToolRequestError",
    "UpdateEventRequest",
    "parse_tool_request",
]
