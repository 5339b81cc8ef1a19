"""Per-call state owned by one SessionBridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from callbridge.models.caller import CallMode, CallSummary, CoachingMetrics

RECENT_APPOINTMENT_TTL_SECONDS = 120.0


def redact_pii(value: str) -> str:
    """Mask PII for logging — show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


class BridgeState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class RecentAppointment:
    created_at: float
    result: dict


@dataclass
class CallSession:
    """Everything one media stream knows about its call.

    Created empty when the transport connects and filled in at stream
    start.  Nothing in here is shared with other calls.
    """

    mode: CallMode = CallMode.RECEPTIONIST
    stream_id: str = ""
    call_id: str = ""
    caller_number: str = ""
    callee_number: str = ""
    user_id: Optional[str] = None
    state: BridgeState = BridgeState.IDLE
    pending_greeting: bool = False

    # Tool-call bookkeeping
    tool_call_cache: dict[str, dict] = field(default_factory=dict)
    in_flight_tool_calls: set[str] = field(default_factory=set)
    answered_tool_calls: set[str] = field(default_factory=set)
    recent_appointments: dict[tuple[str, str, str], RecentAppointment] = field(default_factory=dict)

    # Latest create_appointment attempt
    last_booking_result: Optional[dict] = None
    last_booking_tool_call_id: Optional[str] = None
    booking_correction_issued: bool = False

    summary: CallSummary = field(default_factory=CallSummary)
    coaching: CoachingMetrics = field(default_factory=CoachingMetrics)

    @property
    def session_key(self) -> str:
        """Identity used for booking de-duplication."""
        return self.call_id or self.stream_id

    def begin_booking_attempt(self, tool_call_id: str) -> None:
        self.last_booking_tool_call_id = tool_call_id
        self.last_booking_result = None
        self.booking_correction_issued = False

    def recent_appointment(self, key: tuple[str, str, str], now: float) -> Optional[dict]:
        """Result of an identical booking made within the TTL, if any."""
        expired = [
            k
            for k, entry in self.recent_appointments.items()
            if now - entry.created_at >= RECENT_APPOINTMENT_TTL_SECONDS
        ]
        for k in expired:
            del self.recent_appointments[k]
        entry = self.recent_appointments.get(key)
        return entry.result if entry else None

    def remember_appointment(self, key: tuple[str, str, str], result: dict, now: float) -> None:
        self.recent_appointments[key] = RecentAppointment(created_at=now, result=result)

    def booking_confirmed(self) -> bool:
        result: Any = self.last_booking_result
        return bool(
            isinstance(result, dict) and result.get("created") is True and result.get("eventId")
        )
