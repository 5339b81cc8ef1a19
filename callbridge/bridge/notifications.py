"""Post-call SMS summaries for receptionist calls."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from callbridge.config import Settings
from callbridge.models.caller import CallSummary

from .session import CallSession, redact_pii

log = logging.getLogger("callbridge.notifications")

DEFAULT_REASON = "No reason given."
_DIALABLE = re.compile(r"^\+?\d{10,15}$")


class SmsSender(Protocol):
    async def send_sms(self, to: str, body: str) -> None: ...


class NotificationLedger:
    """Process-wide record of calls that already had their summary sent."""

    def __init__(self) -> None:
        self._sent: set[str] = set()

    def claim(self, call_id: str) -> bool:
        """Return True exactly once per call id."""
        if not call_id or call_id in self._sent:
            return False
        self._sent.add(call_id)
        return True

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sent


def is_dialable(number: Optional[str]) -> bool:
    if not number:
        return False
    cleaned = number.strip()
    if cleaned.lower() == "anonymous":
        return False
    return bool(_DIALABLE.match(cleaned))


def normalize_reason(reason: Optional[str]) -> str:
    text = (reason or "").strip()
    if not text:
        return DEFAULT_REASON
    if text[-1] not in ".!?":
        text += "."
    return text


def format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return "unknown"
    minutes, secs = divmod(seconds, 60)
    return f"{minutes}m {secs:02d}s" if minutes else f"{secs}s"


def _format_time(when: datetime, timezone: str) -> str:
    local = when.astimezone(ZoneInfo(timezone))
    return local.strftime("%a %b %d at %I:%M %p %Z")


def _outcome_line(summary: CallSummary, timezone: str) -> str:
    if summary.appointment_booked and summary.appointment_start_time is not None:
        return f"Appointment booked for {_format_time(summary.appointment_start_time, timezone)}."
    if summary.appointment_booked:
        return "Appointment booked."
    return "No appointment was booked."


def compose_owner_summary(summary: CallSummary, timezone: str) -> str:
    lines = [
        f"Call from {summary.caller_name or 'unknown caller'} "
        f"({summary.caller_number or 'unknown number'}).",
        f"Reason: {normalize_reason(summary.reason)}",
        _outcome_line(summary, timezone),
    ]
    if summary.follow_up_note:
        lines.append(f"Follow-up: {summary.follow_up_note}")
    lines.append(f"Duration: {format_duration(summary.duration_seconds())}")
    return "\n".join(lines)


def compose_caller_summary(summary: CallSummary, timezone: str) -> str:
    greeting = f"Thanks for calling, {summary.caller_name}." if summary.caller_name else "Thanks for calling."
    lines = [
        greeting,
        f"Reason: {normalize_reason(summary.reason)}",
        _outcome_line(summary, timezone),
    ]
    if summary.follow_up_note:
        lines.append(f"Next step: {summary.follow_up_note}")
    lines.append(f"Call length: {format_duration(summary.duration_seconds())}")
    return "\n".join(lines)


class PostCallNotifier:
    """Sends the owner and caller summaries once per call."""

    def __init__(
        self,
        settings: Settings,
        ledger: NotificationLedger,
        messenger: Optional[SmsSender] = None,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._messenger = messenger

    @property
    def ledger(self) -> NotificationLedger:
        return self._ledger

    async def notify(self, session: CallSession) -> None:
        if not self._ledger.claim(session.call_id):
            log.info("Post-call summary already handled for %s", session.call_id or "<no call id>")
            return
        if self._messenger is None:
            log.info("SMS not configured; skipping post-call summary for %s", session.call_id)
            return

        summary = session.summary
        tz = self._settings.calendar_timezone

        owner = self._settings.owner_notify_number
        if owner:
            await self._send(owner, compose_owner_summary(summary, tz))

        caller = summary.caller_number or session.caller_number
        if is_dialable(caller):
            await self._send(caller, compose_caller_summary(summary, tz))
        else:
            log.info("Caller number %s not dialable; no caller SMS", redact_pii(caller or ""))

    async def _send(self, to: str, body: str) -> None:
        try:
            await self._messenger.send_sms(to, body)
            log.info("Post-call SMS sent to %s", redact_pii(to))
        except Exception:
            log.exception("Post-call SMS to %s failed", redact_pii(to))
