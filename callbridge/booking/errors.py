"""Typed errors surfaced by the booking layer."""

from __future__ import annotations

import logging

from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from callbridge.calendar_providers.base import CalendarNotConfiguredError

log = logging.getLogger("callbridge.booking")

BOOKING_NOT_CONFIGURED = "booking_not_configured"
BOOKING_ERROR = "booking_error"

_CONFIG_MARKERS = ("invalid_grant", "invalid_client", "missing")


class BookingToolError(Exception):
    """A booking failure with a machine-readable code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_result(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


def is_config_error(exc: BaseException) -> bool:
    """Whether ``exc`` means the calendar credentials are absent or rejected."""
    if isinstance(exc, (CalendarNotConfiguredError, RefreshError)):
        return True
    if isinstance(exc, HttpError) and getattr(exc.resp, "status", None) == 401:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _CONFIG_MARKERS)


def classify_booking_error(exc: BaseException, operation: str) -> BookingToolError:
    """Fold any failure into one of the two booking error kinds."""
    if isinstance(exc, BookingToolError):
        return exc
    if is_config_error(exc):
        log.warning("Calendar not configured during %s: %s", operation, exc)
        return BookingToolError(
            BOOKING_NOT_CONFIGURED,
            "Calendar booking is not configured right now.",
        )
    log.error("Calendar %s failed: %s", operation, exc)
    return BookingToolError(BOOKING_ERROR, f"Could not complete {operation}.")
