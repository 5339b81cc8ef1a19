"""Free-slot search over busy intervals.

Pure functions only: nothing here talks to a calendar.  The booking layer
fetches busy intervals through the gateway and hands them to
``find_available_slots`` together with the caller's constraints.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from callbridge.calendar_providers.base import BusyInterval

MAX_SLOTS = 2
STEP_MINUTES = 15
NOON_HOUR = 12


class TimePreference(str, Enum):
    NONE = "none"
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EXACT = "exact"


@dataclass(frozen=True)
class AvailabilitySlot:
    start: datetime
    end: datetime


def overlaps_busy(
    start: datetime,
    end: datetime,
    busy: Iterable[BusyInterval],
    buffer: timedelta,
) -> bool:
    """True when ``[start, end)`` touches any busy interval widened by ``buffer``."""
    return any(start < b.end + buffer and end > b.start - buffer for b in busy)


def _days(start: datetime, end: datetime, tz: ZoneInfo) -> Iterable[date]:
    day = start.astimezone(tz).date()
    last = end.astimezone(tz).date()
    while day <= last:
        yield day
        day += timedelta(days=1)


def _align(moment: datetime, day_open: datetime, step: timedelta) -> datetime:
    """Round ``moment`` up onto the step grid that starts at ``day_open``."""
    if moment <= day_open:
        return day_open
    steps = -(-(moment - day_open) // step)
    return day_open + steps * step


def find_available_slots(
    busy: list[BusyInterval],
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    buffer_minutes: int,
    timezone: str,
    preference: TimePreference = TimePreference.NONE,
    exact_time: Optional[time] = None,
    business_start_hour: int = 9,
    business_end_hour: int = 17,
    max_slots: int = MAX_SLOTS,
) -> list[AvailabilitySlot]:
    """Return up to ``max_slots`` free slots inside ``[window_start, window_end]``.

    Each local day is limited to business hours, narrowed to the morning
    (before noon) or afternoon (after noon) when asked, and clipped to the
    window on the first and last day.  Days too short for the duration are
    skipped.

    With ``TimePreference.EXACT`` only ``exact_time`` is tried, on the first
    day where it fits inside the day's hours; the answer is that slot or
    nothing, and later days are not searched.  Otherwise the
    day is scanned in 15-minute steps.
    """
    tz = ZoneInfo(timezone)
    duration = timedelta(minutes=duration_minutes)
    buffer = timedelta(minutes=buffer_minutes)
    step = timedelta(minutes=STEP_MINUTES)
    slots: list[AvailabilitySlot] = []

    if preference is TimePreference.EXACT and exact_time is None:
        raise ValueError("exact_time is required for TimePreference.EXACT")

    for day in _days(window_start, window_end, tz):
        open_at = datetime.combine(day, time(business_start_hour), tzinfo=tz)
        if business_end_hour >= 24:
            close_at = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
        else:
            close_at = datetime.combine(day, time(business_end_hour), tzinfo=tz)

        if preference is TimePreference.MORNING:
            close_at = min(close_at, datetime.combine(day, time(NOON_HOUR), tzinfo=tz))
        elif preference is TimePreference.AFTERNOON:
            open_at = max(open_at, datetime.combine(day, time(NOON_HOUR), tzinfo=tz))

        grid_origin = open_at
        open_at = max(open_at, window_start)
        close_at = min(close_at, window_end)
        if close_at - open_at < duration:
            continue

        if preference is TimePreference.EXACT:
            start = datetime.combine(day, exact_time, tzinfo=tz)
            end = start + duration
            if start < open_at or end > close_at:
                continue
            if overlaps_busy(start, end, busy, buffer):
                return []
            return [AvailabilitySlot(start, end)]

        cursor = _align(open_at, grid_origin, step)
        while cursor + duration <= close_at:
            end = cursor + duration
            if not overlaps_busy(cursor, end, busy, buffer):
                slots.append(AvailabilitySlot(cursor, end))
                if len(slots) >= max_slots:
                    return slots
            cursor += step

    return slots
