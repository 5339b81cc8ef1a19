"""Calendar gateway: rate-limit retry and idempotent event creation.

Wraps a ``CalendarProvider`` so the booking layer never talks to the
calendar directly. Every call is retried with backoff when the provider
reports a rate limit; ``create_event`` is additionally de-duplicated on
``(idempotency source, start, end)`` so a tool call replayed by the AI
(or a concurrent duplicate) books at most one event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from googleapiclient.errors import HttpError

from .base import BusyInterval, CalendarEvent, CalendarProvider, CreatedEvent, EventDetails

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (0.5, 1.5, 3.0)
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 300.0

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def _error_reasons(exc: HttpError) -> set[str]:
    content = exc.content
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        payload = json.loads(content or "{}")
    except ValueError:
        return set()
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return set()
    return {
        item.get("reason", "")
        for item in error.get("errors", [])
        if isinstance(item, dict)
    }


def is_rate_limited(exc: BaseException) -> bool:
    """True for HTTP 429, or 403 carrying a Google rate-limit reason."""
    if not isinstance(exc, HttpError):
        return False
    status = getattr(exc.resp, "status", None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        return False
    if status == 429:
        return True
    if status == 403:
        return bool(_error_reasons(exc) & _RATE_LIMIT_REASONS)
    return False


@dataclass
class _CacheEntry:
    result: Optional[CreatedEvent]
    expires_at: float


class CalendarGateway:
    """Retrying, idempotent front for a ``CalendarProvider``."""

    def __init__(
        self,
        provider: CalendarProvider,
        ttl_seconds: float = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
        retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._ttl = ttl_seconds
        self._retry_delays = retry_delays
        self._clock = clock
        self._sleep = sleep
        self._created: dict[tuple[str, str, str], _CacheEntry] = {}
        self._in_flight: dict[tuple[str, str, str], asyncio.Future] = {}

    @property
    def provider(self) -> CalendarProvider:
        return self._provider

    # ── Retry ─────────────────────────────────────────────────────

    async def _with_retry(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await call()
            except HttpError as exc:
                if not is_rate_limited(exc) or attempt >= len(self._retry_delays):
                    raise
                delay = self._retry_delays[attempt]
                attempt += 1
                logger.warning(
                    "Calendar %s rate limited, retry %d in %.1fs", label, attempt, delay
                )
                await self._sleep(delay)

    # ── Idempotency cache ─────────────────────────────────────────

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, v in self._created.items() if v.expires_at <= now]:
            del self._created[key]

    # ── Public API ────────────────────────────────────────────────

    async def get_availability(
        self, start: datetime, end: datetime, timezone: str
    ) -> list[BusyInterval]:
        """Busy intervals between ``start`` and ``end``."""
        return await self._with_retry(
            "freebusy",
            lambda: self._provider.get_busy_intervals(start, end, timezone),
        )

    async def create_event(
        self,
        start: datetime,
        end: datetime,
        details: EventDetails,
        idempotency_source: str,
    ) -> Optional[CreatedEvent]:
        """Create an event at most once per (source, start, end) within the TTL.

        A concurrent duplicate awaits the in-flight creation instead of
        issuing a second insert. Failed creations are not cached.
        """
        key = (idempotency_source, start.isoformat(), end.isoformat())
        self._purge_expired()

        cached = self._created.get(key)
        if cached is not None:
            logger.info("Idempotent replay for %s at %s", idempotency_source, key[1])
            return cached.result

        pending = self._in_flight.get(key)
        if pending is not None:
            logger.info("Awaiting in-flight create for %s at %s", idempotency_source, key[1])
            return await asyncio.shield(pending)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await self._with_retry(
                "insert",
                lambda: self._provider.create_event(start, end, details),
            )
        except BaseException as exc:
            future.set_exception(exc)
            # Consume the exception so an un-awaited future does not warn.
            future.exception()
            raise
        else:
            future.set_result(result)
            if result is not None and result.event_id:
                self._created[key] = _CacheEntry(result, self._clock() + self._ttl)
            return result
        finally:
            self._in_flight.pop(key, None)

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        return await self._with_retry(
            "list", lambda: self._provider.list_events(start, end)
        )

    async def update_event(
        self,
        event_id: str,
        start: datetime,
        end: datetime,
        timezone: str,
        summary: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CalendarEvent:
        return await self._with_retry(
            "patch",
            lambda: self._provider.update_event(
                event_id, start, end, timezone, summary=summary, description=description
            ),
        )

    async def cancel_event(self, event_id: str) -> None:
        await self._with_retry("delete", lambda: self._provider.cancel_event(event_id))
