"""AI-callable calendar tools for the receptionist."""

from .base import BaseTool
from .booking import (
    CancelEventTool,
    CreateAppointmentTool,
    FindEventTool,
    UpdateEventTool,
    build_tool_registry,
)
from .calendar import CheckAvailabilityTool

__all__ = [
    "BaseTool",
    "CancelEventTool",
    "CheckAvailabilityTool",
    "CreateAppointmentTool",
    "FindEventTool",
    "UpdateEventTool",
    "build_tool_registry",
]
