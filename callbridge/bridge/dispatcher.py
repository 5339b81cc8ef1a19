"""Tool-call dispatch with per-session de-duplication.

The realtime AI may deliver the same function call more than once (once
as ``response.function_call_arguments.done`` and again inside
``response.output_item.done``), and may re-issue an identical booking
under a fresh call id.  ``ToolDispatcher.dispatch`` guarantees:

* one execution per tool-call id for the life of the session;
* a duplicate that arrives while the first is still running is dropped;
* an identical ``create_appointment`` (same start/end) inside two minutes
  reuses the earlier result instead of booking again.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from callbridge.booking.errors import BOOKING_ERROR, BookingToolError
from callbridge.models.booking import (
    CheckAvailabilityRequest,
    CreateAppointmentRequest,
    ToolRequest,
    ToolRequestError,
    UNKNOWN_TOOL,
    parse_tool_request,
)
from callbridge.tools.base import BaseTool

from .session import CallSession

log = logging.getLogger("callbridge.dispatcher")

CALENDAR_TOOLS = frozenset(
    {"check_availability", "create_appointment", "find_event", "update_event", "cancel_event"}
)

Filler = Callable[[], Awaitable[Any]]


def _error(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


class ToolDispatcher:
    """Routes AI tool calls to tools and records their effect on the call."""

    def __init__(
        self,
        tools: dict[str, BaseTool],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tools = tools
        self._clock = clock

    @property
    def tools(self) -> dict[str, BaseTool]:
        return self._tools

    def schemas(self) -> list[dict]:
        return [tool.to_realtime_schema() for tool in self._tools.values()]

    async def dispatch(
        self,
        session: CallSession,
        call_id: str,
        name: str,
        arguments: Any,
        filler: Optional[Filler] = None,
    ) -> Optional[dict]:
        """Run one tool call.  Returns ``None`` for a dropped duplicate."""
        if call_id in session.tool_call_cache:
            log.info("Tool call %s already answered; serving cached result", call_id)
            return session.tool_call_cache[call_id]
        if call_id in session.in_flight_tool_calls:
            log.info("Tool call %s already running; dropping duplicate", call_id)
            return None

        session.in_flight_tool_calls.add(call_id)
        try:
            if name in CALENDAR_TOOLS and filler is not None:
                await filler()
            result = await self._execute(session, call_id, name, arguments)
            session.tool_call_cache[call_id] = result
            return result
        finally:
            session.in_flight_tool_calls.discard(call_id)

    async def _execute(
        self, session: CallSession, call_id: str, name: str, arguments: Any
    ) -> dict:
        try:
            request = parse_tool_request(name, arguments)
        except ToolRequestError as exc:
            log.warning("Rejected %s call %s: %s", name, call_id, exc.message)
            if name == "create_appointment":
                session.begin_booking_attempt(call_id)
            return exc.to_result()

        tool = self._tools.get(name)
        if tool is None:
            return _error(UNKNOWN_TOOL, f"Tool {name!r} is not available on this call.")

        dedupe_key = None
        if isinstance(request, CreateAppointmentRequest):
            session.begin_booking_attempt(call_id)
            session.summary.appointment_requested = True
            session.summary.caller_name = request.name
            session.summary.reason = request.reason
            dedupe_key = (
                session.session_key,
                request.start_iso.isoformat(),
                request.end_iso.isoformat(),
            )
            earlier = session.recent_appointment(dedupe_key, self._clock())
            if earlier is not None:
                log.info("Reusing booking made moments ago for %s", dedupe_key[1])
                self._record(session, request, earlier)
                return earlier

        try:
            result = await tool.execute(request, session.session_key)
        except BookingToolError as exc:
            log.warning("%s failed for call %s: %s", name, call_id, exc.code)
            result = exc.to_result()
        except Exception:
            log.exception("Unexpected error running %s", name)
            result = _error(BOOKING_ERROR, "Something went wrong with the calendar.")

        if dedupe_key is not None and result.get("created") is True:
            session.remember_appointment(dedupe_key, result, self._clock())
        self._record(session, request, result)
        return result

    def _record(self, session: CallSession, request: ToolRequest, result: dict) -> None:
        """Fold a tool result into the call summary."""
        summary = session.summary
        failed = "error" in result

        if isinstance(request, CheckAvailabilityRequest):
            summary.appointment_requested = True

        elif isinstance(request, CreateAppointmentRequest):
            session.last_booking_result = result
            if result.get("created") is True and result.get("eventId"):
                summary.appointment_booked = True
                summary.appointment_start_time = datetime.fromisoformat(result["startISO"])
                summary.follow_up_note = None
            elif failed:
                summary.follow_up_note = "Booking could not be completed; call the customer back."
            elif result.get("dryRun"):
                summary.follow_up_note = "Booking was a dry run; confirm the time with the customer."
