"""Tests for SessionBridge: call lifecycle, tool calls and hang-up work."""

import asyncio
import json

import pytest

from callbridge.booking.operations import BookingOperations
from callbridge.bridge.dispatcher import ToolDispatcher
from callbridge.bridge.notifications import NotificationLedger, PostCallNotifier
from callbridge.bridge.realtime_bridge import SessionBridge
from callbridge.bridge.session import BridgeState
from callbridge.calendar_providers.gateway import CalendarGateway
from callbridge.channels.base import AudioFrame, StreamStarted, StreamStopped
from callbridge.models.caller import CallMode
from callbridge.prompts import (
    BOOKING_CORRECTION_INSTRUCTION,
    FILLER_INSTRUCTION,
    OPT_OUT_MARKER,
    SIMPLIFY_MARKER,
)
from callbridge.storage import MemoryCallStore
from callbridge.tools.booking import build_tool_registry

from conftest import FakeMessenger, FakeRealtime, FakeTransport, make_settings

CREATE_ARGS = json.dumps(
    {
        "startISO": "2025-03-11T10:00:00-07:00",
        "endISO": "2025-03-11T10:30:00-07:00",
        "name": "Ana Ruiz",
        "reason": "Leaky faucet",
    }
)

RECEPTIONIST_START = StreamStarted(
    stream_id="MZ1",
    call_id="CA1",
    parameters={"mode": "receptionist", "from": "+15205550100", "to": "+15205550199"},
)


@pytest.fixture
def settings():
    return make_settings(owner_notify_number="+15205550999")


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def notifier(settings, messenger):
    return PostCallNotifier(settings, NotificationLedger(), messenger)


@pytest.fixture
def dispatcher(provider, settings):
    operations = BookingOperations(CalendarGateway(provider), settings)
    return ToolDispatcher(build_tool_registry(operations))


@pytest.fixture
def realtime():
    return FakeRealtime()


@pytest.fixture
def transport():
    return FakeTransport()


def make_bridge(transport, realtime, dispatcher, settings, **kwargs):
    return SessionBridge(
        transport,
        realtime_factory=lambda: realtime,
        dispatcher=dispatcher,
        settings=settings,
        **kwargs,
    )


async def start_call(bridge, event=RECEPTIONIST_START):
    await bridge.on_stream_start(event)
    await bridge._connect_task


def responses(realtime):
    return [e["response"].get("instructions") for e in realtime.sent if e["type"] == "response.create" and "response" in e]


# ── Lifecycle ───────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_connects_and_greets(self, transport, realtime, dispatcher, settings):
        bridge = make_bridge(transport, realtime, dispatcher, settings)
        assert bridge.state is BridgeState.IDLE

        await bridge.on_stream_start(RECEPTIONIST_START)
        assert bridge.state is BridgeState.CONNECTING
        await bridge._connect_task

        assert bridge.state is BridgeState.ACTIVE
        assert realtime.sent_types() == ["session.update", "response.create"]
        session = realtime.sent[0]["session"]
        assert len(session["tools"]) == 5
        assert bridge.session.call_id == "CA1"
        assert bridge.session.caller_number == "+15205550100"
        assert bridge.session.pending_greeting is False
        await bridge.close()

    @pytest.mark.asyncio
    async def test_audio_before_active_is_dropped(self, transport, realtime, dispatcher, settings):
        bridge = make_bridge(transport, realtime, dispatcher, settings)
        await bridge.on_audio("early")
        await bridge.on_stream_start(RECEPTIONIST_START)
        await bridge.on_audio("still early")
        await bridge._connect_task
        await bridge.on_audio("live")

        assert bridge.dropped_audio_frames == 2
        appended = [e["audio"] for e in realtime.sent if e["type"] == "input_audio_buffer.append"]
        assert appended == ["live"]
        await bridge.close()

    @pytest.mark.asyncio
    async def test_repeated_start_ignored(self, transport, realtime, dispatcher, settings):
        bridge = make_bridge(transport, realtime, dispatcher, settings)
        await start_call(bridge)
        await bridge.on_stream_start(StreamStarted("MZ2", "CA2"))
        assert bridge.session.stream_id == "MZ1"
        await bridge.close()

    @pytest.mark.asyncio
    async def test_connect_failure_closes_call(self, transport, dispatcher, settings):
        bridge = make_bridge(transport, FakeRealtime(fail=True), dispatcher, settings)
        await start_call(bridge)
        assert bridge.state is BridgeState.CLOSED
        assert transport.closed

    @pytest.mark.asyncio
    async def test_hang_up_while_connecting(self, transport, dispatcher, settings):
        realtime = FakeRealtime(gate=asyncio.Event())
        bridge = make_bridge(transport, realtime, dispatcher, settings)
        await bridge.on_stream_start(RECEPTIONIST_START)
        await asyncio.sleep(0)
        await bridge.close()

        assert bridge.state is BridgeState.CLOSED
        with pytest.raises(asyncio.CancelledError):
            await bridge._connect_task
        assert realtime.sent == []
        assert not realtime.connected

    @pytest.mark.asyncio
    async def test_run_until_stop(self, realtime, dispatcher, settings, notifier):
        transport = FakeTransport([RECEPTIONIST_START, AudioFrame("AAAA"), StreamStopped()])
        bridge = make_bridge(transport, realtime, dispatcher, settings, notifier=notifier)
        await bridge.run()

        assert bridge.state is BridgeState.CLOSED
        assert bridge.dropped_audio_frames == 1
        assert transport.closed
        assert "CA1" in notifier.ledger

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, transport, realtime, dispatcher, settings, notifier, messenger):
        bridge = make_bridge(transport, realtime, dispatcher, settings, notifier=notifier)
        await start_call(bridge)
        await bridge.close()
        await bridge.close()

        assert realtime.sent_types().count("input_audio_buffer.commit") == 1
        assert realtime.closed
        assert len(messenger.sms) == 2

    @pytest.mark.asyncio
    async def test_ai_disconnect_closes_call(self, transport, realtime, dispatcher, settings):
        bridge = make_bridge(transport, realtime, dispatcher, settings)
        await start_call(bridge)
        realtime.push(None)
        await bridge._reader_task
        assert bridge.state is BridgeState.CLOSED
        assert transport.closed


# ── AI events ───────────────────────────────────────────────────────


class TestAiEvents:
    @pytest.fixture
    async def bridge(self, transport, realtime, dispatcher, settings):
        bridge = make_bridge(transport, realtime, dispatcher, settings)
        await start_call(bridge)
        yield bridge
        await bridge.close()

    @pytest.mark.asyncio
    async def test_audio_forwarded_with_stream_id(self, bridge, transport):
        await bridge.handle_ai_event({"type": "response.audio.delta", "delta": "UUUU"})
        await bridge.handle_ai_event({"type": "response.output_audio.delta", "delta": "VVVV"})
        assert transport.audio == [("MZ1", "UUUU"), ("MZ1", "VVVV")]

    @pytest.mark.asyncio
    async def test_barge_in_clears_playback(self, bridge, transport):
        await bridge.handle_ai_event({"type": "input_audio_buffer.speech_started"})
        assert transport.clears == ["MZ1"]

    @pytest.mark.asyncio
    async def test_duplicate_function_call_answered_once(self, bridge, realtime, provider):
        await bridge.handle_ai_event(
            {
                "type": "response.function_call_arguments.done",
                "call_id": "call_1",
                "name": "create_appointment",
                "arguments": CREATE_ARGS,
            }
        )
        await bridge.handle_ai_event(
            {
                "type": "response.output_item.done",
                "item": {
                    "type": "function_call",
                    "call_id": "call_1",
                    "name": "create_appointment",
                    "arguments": CREATE_ARGS,
                },
            }
        )
        await bridge.wait_for_tool_calls()

        outputs = [e for e in realtime.sent if e["type"] == "conversation.item.create"]
        assert len(outputs) == 1
        assert outputs[0]["item"]["call_id"] == "call_1"
        assert json.loads(outputs[0]["item"]["output"])["created"] is True
        assert len(provider.created) == 1
        assert responses(realtime).count(FILLER_INSTRUCTION) == 1
        assert realtime.sent[-1] == {"type": "response.create"}

    @pytest.mark.asyncio
    async def test_function_call_without_id_ignored(self, bridge, realtime):
        await bridge.handle_ai_event({"type": "response.function_call_arguments.done", "name": "find_event"})
        await bridge.wait_for_tool_calls()
        assert "conversation.item.create" not in realtime.sent_types()

    @pytest.mark.asyncio
    async def test_unconfirmed_booking_claim_corrected_once(self, bridge, realtime):
        await bridge.handle_ai_event(
            {"type": "response.audio_transcript.done", "transcript": "Great, you're booked for Tuesday."}
        )
        await bridge.handle_ai_event({"type": "response.text.delta", "delta": "You're all "})
        await bridge.handle_ai_event({"type": "response.text.delta", "delta": "scheduled."})
        await bridge.handle_ai_event({"type": "response.text.done"})
        assert responses(realtime).count(BOOKING_CORRECTION_INSTRUCTION) == 1

    @pytest.mark.asyncio
    async def test_confirmed_booking_claim_left_alone(self, bridge, realtime):
        await bridge.handle_ai_event(
            {
                "type": "response.function_call_arguments.done",
                "call_id": "call_1",
                "name": "create_appointment",
                "arguments": CREATE_ARGS,
            }
        )
        await bridge.wait_for_tool_calls()
        await bridge.handle_ai_event(
            {"type": "response.audio_transcript.done", "transcript": "You're booked for 10 AM."}
        )
        assert BOOKING_CORRECTION_INSTRUCTION not in responses(realtime)

    @pytest.mark.asyncio
    async def test_dry_run_booking_claim_corrected(self, transport, realtime, provider):
        settings = make_settings(booking_dry_run=True)
        operations = BookingOperations(CalendarGateway(provider), settings)
        bridge = make_bridge(
            transport, realtime, ToolDispatcher(build_tool_registry(operations)), settings
        )
        await start_call(bridge)
        await bridge.handle_ai_event(
            {
                "type": "response.function_call_arguments.done",
                "call_id": "call_1",
                "name": "create_appointment",
                "arguments": CREATE_ARGS,
            }
        )
        await bridge.wait_for_tool_calls()
        assert bridge.session.last_booking_result["created"] is False

        claim = "You're all set, I've booked that for 3pm."
        await bridge.handle_ai_event({"type": "response.audio_transcript.done", "transcript": claim})
        await bridge.handle_ai_event({"type": "response.audio_transcript.done", "transcript": claim})

        assert responses(realtime).count(BOOKING_CORRECTION_INSTRUCTION) == 1
        assert provider.created == []
        assert bridge.session.summary.appointment_booked is False
        await bridge.close()

    @pytest.mark.asyncio
    async def test_error_event_does_not_close(self, bridge):
        await bridge.handle_ai_event({"type": "error", "error": {"message": "bad event"}})
        assert bridge.state is BridgeState.ACTIVE


# ── Post-call summary ───────────────────────────────────────────────


class TestPostCall:
    @pytest.mark.asyncio
    async def test_booked_call_sends_both_summaries(
        self, transport, realtime, dispatcher, settings, notifier, messenger
    ):
        bridge = make_bridge(transport, realtime, dispatcher, settings, notifier=notifier)
        await start_call(bridge)
        await bridge.handle_ai_event(
            {
                "type": "response.function_call_arguments.done",
                "call_id": "call_1",
                "name": "create_appointment",
                "arguments": CREATE_ARGS,
            }
        )
        await bridge.wait_for_tool_calls()
        await bridge.close()

        recipients = [to for to, _ in messenger.sms]
        assert recipients == ["+15205550999", "+15205550100"]
        owner_text = messenger.sms[0][1]
        assert owner_text.startswith("Call from Ana Ruiz (+15205550100).")
        assert "Appointment booked for Tue Mar 11 at 10:00 AM MST." in owner_text

    @pytest.mark.asyncio
    async def test_anonymous_caller_only_owner_notified(
        self, transport, realtime, dispatcher, settings, notifier, messenger
    ):
        bridge = make_bridge(transport, realtime, dispatcher, settings, notifier=notifier)
        await start_call(bridge, StreamStarted("MZ1", "CA1", {"from": "anonymous"}))
        await bridge.close()
        assert [to for to, _ in messenger.sms] == ["+15205550999"]
        assert "No appointment was booked." in messenger.sms[0][1]


# ── Coaching calls ──────────────────────────────────────────────────


class TestCoachingCall:
    @pytest.fixture
    def store(self):
        return MemoryCallStore()

    @pytest.mark.asyncio
    async def test_coaching_call_scored_and_saved(
        self, transport, realtime, dispatcher, settings, notifier, messenger, store
    ):
        user = await store.upsert_user(
            "+15205550100", name="Ana", level_estimate="A1", call_instructions="Talk about food."
        )
        await store.create_call_log("CA9", user_id=user.id, outcome="initiated")

        bridge = make_bridge(
            transport, realtime, dispatcher, settings,
            store=store, notifier=notifier, default_mode=CallMode.COACHING,
        )
        await start_call(bridge, StreamStarted("MZ9", "", {"mode": "coach", "userId": user.id, "callSid": "CA9"}))

        session = realtime.sent[0]["session"]
        assert "tools" not in session
        assert "current level is A1" in session["instructions"]
        assert "The learner's name is Ana." in session["instructions"]
        assert "Talk about food." in session["instructions"]

        transcript = "conversation.item.input_audio_transcription.completed"
        await bridge.handle_ai_event({"type": transcript, "transcript": "Hola, me llamo Ana."})
        await bridge.handle_ai_event({"type": transcript, "transcript": "Me gusta la comida."})
        await bridge.handle_ai_event(
            {"type": "response.audio_transcript.done", "transcript": f"{SIMPLIFY_MARKER} ¿Te gusta el café?"}
        )
        await bridge.handle_ai_event({"type": "response.audio_transcript.done", "transcript": OPT_OUT_MARKER})
        # booking words mean nothing on a coaching call
        await bridge.handle_ai_event({"type": "response.audio_transcript.done", "transcript": "Booked!"})
        await bridge.close()

        assert BOOKING_CORRECTION_INSTRUCTION not in responses(realtime)

        fresh = await store.get_user_by_id(user.id)
        assert fresh.level_estimate == "B1"
        assert fresh.is_active is False

        entry = await store.get_call_log_by_sid("CA9")
        assert entry.outcome == "completed"
        assert entry.ended_at is not None
        assert entry.summary.startswith("Score 80 (B1)")
        metrics = json.loads(entry.metrics_json)
        assert metrics["score"] == 80
        assert metrics["opted_out"] is True

        assert messenger.sms == []
        assert "CA9" not in notifier.ledger

    @pytest.mark.asyncio
    async def test_duolingo_unit_customization(self, transport, realtime, dispatcher, settings, store):
        user = await store.upsert_user("+15205550100", duolingo_unit=4)
        bridge = make_bridge(
            transport, realtime, dispatcher, settings, store=store, default_mode=CallMode.COACHING
        )
        await start_call(bridge, StreamStarted("MZ9", "CA9", {"userId": user.id}))
        assert "Duolingo unit 4" in realtime.sent[0]["session"]["instructions"]
        await bridge.close()

    @pytest.mark.asyncio
    async def test_unknown_user_still_scores(self, transport, realtime, dispatcher, settings, store):
        bridge = make_bridge(
            transport, realtime, dispatcher, settings, store=store, default_mode=CallMode.COACHING
        )
        await start_call(bridge, StreamStarted("MZ9", "CA9", {"userId": "nobody"}))
        await bridge.close()
        assert bridge.state is BridgeState.CLOSED

    @pytest.mark.asyncio
    async def test_user_lookup_failure_uses_base_instructions(
        self, transport, realtime, dispatcher, settings
    ):
        class LockedStore(MemoryCallStore):
            async def get_user_by_id(self, user_id):
                raise RuntimeError("database is locked")

        bridge = make_bridge(
            transport, realtime, dispatcher, settings,
            store=LockedStore(), default_mode=CallMode.COACHING,
        )
        await start_call(bridge, StreamStarted("MZ9", "CA9", {"userId": "u1"}))

        assert realtime.connected
        assert bridge.state is BridgeState.ACTIVE
        assert "current level" not in realtime.sent[0]["session"]["instructions"]
        await bridge.close()
        assert bridge.state is BridgeState.CLOSED
