"""Apply Twilio call-status callbacks to the call log."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from callbridge.storage import CallStore

log = logging.getLogger("callbridge.call_status")

_ENDED_OUTCOMES = {
    "busy": "no_answer",
    "no-answer": "no_answer",
    "failed": "failed",
    "canceled": "failed",
}


def call_log_update(status: str, now: datetime) -> dict[str, Any]:
    """Call-log fields implied by one status value (empty when none)."""
    if status == "answered":
        return {"outcome": "answered", "started_at": now}
    if status in _ENDED_OUTCOMES:
        return {"outcome": _ENDED_OUTCOMES[status], "ended_at": now}
    if status == "completed":
        return {"ended_at": now}
    return {}


async def apply_call_status(
    store: CallStore,
    call_sid: Optional[str],
    status: Optional[str],
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    now = now or datetime.now(timezone.utc)
    status = (status or "").strip().lower()

    if call_sid and status:
        fields = call_log_update(status, now)
        if fields:
            updated = await store.update_call_log_by_sid(call_sid, **fields)
            if updated is None:
                log.info("Status %s for unknown call %s", status, call_sid)

    if status == "blocked" and user_id:
        if await store.set_user_inactive_by_id(user_id):
            log.info("User %s blocked our calls; deactivated", user_id)
