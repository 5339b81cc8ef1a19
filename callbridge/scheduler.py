"""Daily outbound coaching calls.

``CoachScheduler`` wakes once a minute, finds active learners whose
preferred local call time is now, and dials them through Twilio.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol
from zoneinfo import ZoneInfo

from callbridge.bridge.session import redact_pii
from callbridge.storage import CallStore, CoachUser

log = logging.getLogger("callbridge.scheduler")

POLL_INTERVAL_SECONDS = 60
MIN_HOURS_BETWEEN_CALLS = 20
MATCH_WINDOW_MINUTES = 1
RUN_NOW_LIMIT = 10


class CallPlacer(Protocol):
    async def place_coach_call(self, user_id: str, phone_e164: str) -> str: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_user_due(user: CoachUser, now_utc: datetime) -> bool:
    """Local hour matches and minute is within ±1 of the preference, at most once per 20 h."""
    local = now_utc.astimezone(ZoneInfo(user.timezone))
    if local.hour != user.preferred_call_hour_local:
        return False
    if abs(local.minute - user.preferred_call_minute_local) > MATCH_WINDOW_MINUTES:
        return False
    if user.last_called_at is not None:
        if now_utc - user.last_called_at < timedelta(hours=MIN_HOURS_BETWEEN_CALLS):
            return False
    return True


class CoachScheduler:
    def __init__(
        self,
        store: CallStore,
        placer: CallPlacer,
        now: Callable[[], datetime] = _utcnow,
        interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._placer = placer
        self._now = now
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _call(self, user: CoachUser) -> bool:
        try:
            call_sid = await self._placer.place_coach_call(user.id, user.phone_e164)
        except Exception:
            log.exception("Failed to place coach call to %s", redact_pii(user.phone_e164))
            return False
        now = self._now()
        await self._store.create_call_log(call_sid, user_id=user.id, outcome="initiated")
        await self._store.update_last_called(user.id, now)
        return True

    async def process_due_users(self) -> int:
        """Call every due user once.  Returns how many calls were placed."""
        if self._lock.locked():
            return 0
        async with self._lock:
            now = self._now()
            placed = 0
            for user in await self._store.list_active_users():
                if is_user_due(user, now) and await self._call(user):
                    placed += 1
            return placed

    async def run_now(self, limit: int = RUN_NOW_LIMIT) -> int:
        """Call up to ``limit`` active users immediately, ignoring their schedule."""
        users = (await self._store.list_active_users())[:limit]
        placed = 0
        for user in users:
            if await self._call(user):
                placed += 1
        return placed

    async def _loop(self) -> None:
        while True:
            try:
                placed = await self.process_due_users()
                if placed:
                    log.info("Placed %d coach call(s)", placed)
            except Exception:
                log.exception("Coach scheduler pass failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        log.info("Coach scheduler running (every %ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
