"""Detect the AI telling a caller an appointment is booked when it is not."""

from __future__ import annotations

import re

from callbridge.models.caller import CallMode

from .session import CallSession

CLAIM_PATTERN = re.compile(r"\b(booked|scheduled|confirmed|set up|locked in)\b", re.IGNORECASE)


def contains_booking_claim(text: str) -> bool:
    return bool(text) and CLAIM_PATTERN.search(text) is not None


def needs_booking_correction(session: CallSession, text: str) -> bool:
    """True when ``text`` claims a booking the calendar never confirmed.

    Fires at most once per booking attempt: the latch on the session is
    only reset when a new ``create_appointment`` call starts.
    """
    if session.mode is not CallMode.RECEPTIONIST:
        return False
    if session.booking_correction_issued:
        return False
    if not contains_booking_claim(text):
        return False
    return not session.booking_confirmed()
