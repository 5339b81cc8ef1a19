"""Booking layer: slot search and calendar-backed appointment operations."""

from .errors import BookingToolError, classify_booking_error
from .operations import BookingOperations
from .slot_finder import AvailabilitySlot, TimePreference, find_available_slots

__all__ = [
    "AvailabilitySlot",
    "BookingOperations",
    "BookingToolError",
    "TimePreference",
    "classify_booking_error",
    "find_available_slots",
]
