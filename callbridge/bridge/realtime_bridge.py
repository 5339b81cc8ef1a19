"""SessionBridge — one phone call relayed to one realtime AI session.

Lifecycle (``CallSession.state``)::

    IDLE ──stream start──▶ CONNECTING ──AI socket open──▶ ACTIVE
      │                        │                            │
      └────────────────────────┴── stop / error / close ───▶ CLOSED

* Caller audio is forwarded to the AI untouched once ACTIVE; frames that
  arrive earlier are dropped, not buffered.
* AI audio is forwarded to the transport tagged with the stream id.
* Function calls from the AI run as tasks through ``ToolDispatcher``; the
  result goes back as a ``function_call_output`` item.
* Each finished AI turn is checked for booking claims (receptionist) or
  coaching markers (coaching).
* Closing commits buffered input, finalizes per-mode bookkeeping, closes
  the AI socket and sends the post-call summary.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from callbridge.channels.base import AudioFrame, MediaTransport, StreamStarted, StreamStopped
from callbridge.config import Settings
from callbridge.models.caller import CallMode
from callbridge.prompts import (
    BOOKING_CORRECTION_INSTRUCTION,
    FILLER_INSTRUCTION,
    build_instructions,
    greeting_for,
)
from callbridge.realtime.client import RealtimeConnection, build_session_update
from callbridge.storage import CallStore

from .claims import needs_booking_correction
from .coaching import (
    compute_score,
    describe_call,
    level_for_score,
    record_ai_speech,
    record_learner_utterance,
)
from .dispatcher import ToolDispatcher
from .notifications import PostCallNotifier
from .session import BridgeState, CallSession, redact_pii

log = logging.getLogger("callbridge.bridge")

AUDIO_DELTA_EVENTS = frozenset({"response.audio.delta", "response.output_audio.delta"})
TEXT_DELTA_EVENTS = frozenset(
    {
        "response.audio_transcript.delta",
        "response.output_audio_transcript.delta",
        "response.text.delta",
        "response.output_text.delta",
    }
)
TEXT_DONE_EVENTS = frozenset(
    {
        "response.audio_transcript.done",
        "response.output_audio_transcript.done",
        "response.text.done",
        "response.output_text.done",
    }
)
CALLER_TRANSCRIPT_EVENT = "conversation.item.input_audio_transcription.completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionBridge:
    """Owns one media stream, its AI connection and its ``CallSession``."""

    def __init__(
        self,
        transport: MediaTransport,
        realtime_factory: Callable[[], RealtimeConnection],
        dispatcher: ToolDispatcher,
        settings: Settings,
        store: Optional[CallStore] = None,
        notifier: Optional[PostCallNotifier] = None,
        default_mode: CallMode = CallMode.RECEPTIONIST,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.session = CallSession(mode=default_mode)
        self._transport = transport
        self._realtime_factory = realtime_factory
        self._dispatcher = dispatcher
        self._settings = settings
        self._store = store
        self._notifier = notifier
        self._now = now

        self._ai: Optional[RealtimeConnection] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._tool_tasks: set[asyncio.Task] = set()
        self._turn_text: list[str] = []
        self.dropped_audio_frames = 0

    @property
    def state(self) -> BridgeState:
        return self.session.state

    # ── Transport side ────────────────────────────────────────────

    async def run(self) -> None:
        """Consume transport events until the stream stops, then close."""
        try:
            async for event in self._transport.events():
                if isinstance(event, StreamStarted):
                    await self.on_stream_start(event)
                elif isinstance(event, AudioFrame):
                    await self.on_audio(event.payload)
                elif isinstance(event, StreamStopped):
                    break
                if self.session.state is BridgeState.CLOSED:
                    break
        finally:
            await self.close()

    async def on_stream_start(self, event: StreamStarted) -> None:
        s = self.session
        if s.state is not BridgeState.IDLE:
            log.warning("Ignoring repeated stream start on %s", s.stream_id)
            return

        params = event.parameters
        s.stream_id = event.stream_id
        s.call_id = event.call_id or params.get("callSid", "")
        if params.get("mode"):
            s.mode = CallMode.parse(params["mode"])
        s.caller_number = params.get("from", "")
        s.callee_number = params.get("to", "")
        s.user_id = params.get("userId") or None
        s.summary.caller_number = s.caller_number or None
        s.summary.start_time = self._now()
        s.pending_greeting = True
        s.state = BridgeState.CONNECTING

        log.info(
            "Stream %s started: call=%s mode=%s from=%s",
            s.stream_id,
            s.call_id,
            s.mode.value,
            redact_pii(s.caller_number),
        )

        instructions = build_instructions(s.mode, await self._load_customization())
        self._connect_task = asyncio.create_task(self._connect(instructions))

    async def on_audio(self, payload: str) -> None:
        ai = self._ai
        if self.session.state is BridgeState.ACTIVE and ai is not None and ai.is_open:
            await ai.send({"type": "input_audio_buffer.append", "audio": payload})
        else:
            self.dropped_audio_frames += 1

    # ── AI connection ─────────────────────────────────────────────

    async def _connect(self, instructions: str) -> None:
        ai = self._realtime_factory()
        try:
            await ai.connect()
        except Exception:
            log.exception("Realtime connection failed for call %s", self.session.call_id)
            await self.close()
            return

        if self.session.state is BridgeState.CLOSED:
            await ai.close()
            return

        self._ai = ai
        await self.on_ai_ready(instructions)
        self._reader_task = asyncio.create_task(self._read_ai())

    async def on_ai_ready(self, instructions: str) -> None:
        s = self.session
        tools = self._dispatcher.schemas() if s.mode is CallMode.RECEPTIONIST else None
        await self._send_ai(
            build_session_update(instructions, self._settings.realtime_voice, tools)
        )
        s.state = BridgeState.ACTIVE
        if s.pending_greeting:
            s.pending_greeting = False
            await self._send_ai(
                {"type": "response.create", "response": {"instructions": greeting_for(s.mode)}}
            )

    async def _read_ai(self) -> None:
        ai = self._ai
        if ai is None:
            return
        try:
            async for event in ai.events():
                await self.handle_ai_event(event)
                if self.session.state is BridgeState.CLOSED:
                    return
        except Exception:
            log.exception("Realtime event handling failed for call %s", self.session.call_id)
        if self.session.state is not BridgeState.CLOSED:
            log.info("Realtime connection ended; closing call %s", self.session.call_id)
            await self.close()

    async def _send_ai(self, event: dict) -> bool:
        ai = self._ai
        if ai is None or not ai.is_open:
            return False
        return await ai.send(event)

    async def handle_ai_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type", "")
        s = self.session

        if kind in AUDIO_DELTA_EVENTS:
            delta = event.get("delta")
            if delta and s.stream_id:
                await self._transport.send_audio(s.stream_id, delta)

        elif kind == "input_audio_buffer.speech_started":
            if s.stream_id:
                await self._transport.send_clear(s.stream_id)

        elif kind in TEXT_DELTA_EVENTS:
            self._turn_text.append(event.get("delta") or "")

        elif kind in TEXT_DONE_EVENTS:
            text = event.get("transcript") or event.get("text") or "".join(self._turn_text)
            self._turn_text.clear()
            if text:
                await self.on_ai_text(text)

        elif kind == CALLER_TRANSCRIPT_EVENT:
            text = event.get("transcript") or ""
            if text:
                self.on_caller_text(text)

        elif kind == "response.function_call_arguments.done":
            self._start_tool_call(event.get("call_id"), event.get("name"), event.get("arguments"))

        elif kind == "response.output_item.done":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                self._start_tool_call(item.get("call_id"), item.get("name"), item.get("arguments"))

        elif kind == "error":
            error = event.get("error") or {}
            log.warning("Realtime error on call %s: %s", s.call_id, error.get("message", error))

        elif kind in ("session.created", "session.updated", "response.done"):
            log.debug("Realtime %s on call %s", kind, s.call_id)

    # ── Turn handling ─────────────────────────────────────────────

    async def on_ai_text(self, text: str) -> None:
        s = self.session
        if s.mode is CallMode.COACHING:
            record_ai_speech(s.coaching, text)
            return
        if needs_booking_correction(s, text):
            s.booking_correction_issued = True
            log.warning("AI claimed an unconfirmed booking on call %s; correcting", s.call_id)
            await self._send_ai(
                {"type": "response.create", "response": {"instructions": BOOKING_CORRECTION_INSTRUCTION}}
            )

    def on_caller_text(self, text: str) -> None:
        if self.session.mode is CallMode.COACHING:
            record_learner_utterance(self.session.coaching, text)

    # ── Tool calls ────────────────────────────────────────────────

    def _start_tool_call(self, call_id: Optional[str], name: Optional[str], arguments: Any) -> None:
        if not call_id or not name:
            log.warning("Ignoring function call without id or name")
            return
        task = asyncio.create_task(self._run_tool_call(call_id, name, arguments))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _send_filler(self) -> None:
        await self._send_ai(
            {"type": "response.create", "response": {"instructions": FILLER_INSTRUCTION}}
        )

    async def _run_tool_call(self, call_id: str, name: str, arguments: Any) -> None:
        s = self.session
        try:
            result = await self._dispatcher.dispatch(
                s, call_id, name, arguments, filler=self._send_filler
            )
            if result is None or call_id in s.answered_tool_calls:
                return
            s.answered_tool_calls.add(call_id)
            delivered = await self._send_ai(
                {
                    "type": "conversation.item.create",
                    "item": {
                        "type": "function_call_output",
                        "call_id": call_id,
                        "output": json.dumps(result),
                    },
                }
            )
            if delivered:
                await self._send_ai({"type": "response.create"})
            else:
                log.info("Call %s ended before %s result was delivered", s.call_id, name)
        except Exception:
            log.exception("Tool call %s (%s) failed", call_id, name)

    async def wait_for_tool_calls(self) -> None:
        """Wait for every tool call started so far."""
        while self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks))

    # ── Shutdown ──────────────────────────────────────────────────

    async def close(self) -> None:
        """Finish the call.  Safe to call more than once."""
        s = self.session
        if s.state is BridgeState.CLOSED:
            return
        was_active = s.state is BridgeState.ACTIVE
        s.state = BridgeState.CLOSED
        s.summary.end_time = self._now()
        current = asyncio.current_task()

        if self._connect_task is not None and self._connect_task is not current:
            self._connect_task.cancel()

        if was_active:
            await self._send_ai({"type": "input_audio_buffer.commit"})

        if s.mode is CallMode.COACHING:
            await self._finalize_coaching()

        if self._ai is not None:
            await self._ai.close()
        if self._reader_task is not None and self._reader_task is not current:
            self._reader_task.cancel()

        await self._transport.close()

        if s.mode is CallMode.RECEPTIONIST and self._notifier is not None:
            await self._notifier.notify(s)

        log.info(
            "Call %s closed (booked=%s, dropped_frames=%d)",
            s.call_id or "<none>",
            s.summary.appointment_booked,
            self.dropped_audio_frames,
        )

    async def _load_customization(self) -> Optional[str]:
        s = self.session
        if s.mode is not CallMode.COACHING or self._store is None or not s.user_id:
            return None
        try:
            user = await self._store.get_user_by_id(s.user_id)
        except Exception:
            log.exception("Could not load user %s; using base coaching instructions", s.user_id)
            return None
        if user is None:
            return None
        lines = [f"The learner's current level is {user.level_estimate}."]
        if user.name:
            lines.append(f"The learner's name is {user.name}.")
        if user.call_instructions:
            lines.append(user.call_instructions)
        elif user.call_prompt:
            lines.append(user.call_prompt)
        elif user.duolingo_unit:
            lines.append(
                f"The learner is on Duolingo unit {user.duolingo_unit}; "
                "use vocabulary from that unit."
            )
        return "\n".join(lines)

    async def _finalize_coaching(self) -> None:
        s = self.session
        score = compute_score(s.coaching)
        level = level_for_score(score)
        log.info("Coaching call %s scored %d (%s)", s.call_id, score, level)
        if self._store is None or not s.user_id:
            return
        try:
            await self._store.update_user_level(s.user_id, level)
            if s.call_id:
                await self._store.update_call_log_by_sid(
                    s.call_id,
                    outcome="completed",
                    ended_at=s.summary.end_time,
                    summary=describe_call(s.coaching, score, level),
                    metrics_json=json.dumps(
                        {"score": score, "level": level, **s.coaching.model_dump()}
                    ),
                )
            if s.coaching.opted_out:
                await self._store.set_user_inactive_by_id(s.user_id)
                log.info("User %s opted out of coaching calls", s.user_id)
        except Exception:
            log.exception("Failed to save coaching results for user %s", s.user_id)
