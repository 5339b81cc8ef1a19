"""TwilioMediaStreamChannel — MediaTransport over Twilio Media Streams.

Twilio Media Streams deliver G.711 u-law audio over a WebSocket as base64
payloads.  The realtime AI is configured for the same codec, so frames
pass through both ways untouched.

Protocol reference:
  https://www.twilio.com/docs/voice/media-streams/websocket-messages

WebSocket message flow:
  ← {"event":"connected", "protocol":"Call", "version":"1.0.0"}
  ← {"event":"start", "start":{"streamSid":"...","callSid":"...",
                               "customParameters":{"mode":"...", ...}}}
  ← {"event":"media", "media":{"payload":"<base64 mulaw>"}}
  ← {"event":"stop"}

  → {"event":"media", "streamSid":"...", "media":{"payload":"<base64 mulaw>"}}
  → {"event":"clear", "streamSid":"..."}
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import WebSocket, WebSocketDisconnect

from callbridge.channels.base import (
    AudioFrame,
    MediaTransport,
    StreamStarted,
    StreamStopped,
    TransportEvent,
)

log = logging.getLogger("callbridge.twilio_channel")


class TwilioMediaStreamChannel(MediaTransport):
    """MediaTransport implementation for Twilio Media Streams over WebSocket.

    Usage::

        @app.websocket("/twilio/stream")
        async def twilio_stream(ws: WebSocket):
            await ws.accept()
            channel = TwilioMediaStreamChannel(ws)
            async for event in channel.events():
                ...
    """

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._closed = False

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Parse Twilio messages into transport events.

        Unknown events (mark, dtmf, ...) and malformed messages are skipped.
        """
        while not self._closed:
            try:
                raw = await self._ws.receive_text()
            except (WebSocketDisconnect, RuntimeError):
                log.info("Twilio WebSocket closed")
                return

            try:
                msg = json.loads(raw)
            except ValueError:
                log.warning("Ignoring non-JSON Twilio message")
                continue

            event = msg.get("event")

            if event == "connected":
                log.info("Twilio connected: protocol=%s", msg.get("protocol"))

            elif event == "start":
                start = msg.get("start") or {}
                params = {
                    str(k): str(v)
                    for k, v in (start.get("customParameters") or {}).items()
                    if v is not None
                }
                call_id = start.get("callSid") or params.get("callSid", "")
                yield StreamStarted(
                    stream_id=start.get("streamSid") or msg.get("streamSid", ""),
                    call_id=call_id,
                    parameters=params,
                )

            elif event == "media":
                payload = (msg.get("media") or {}).get("payload")
                if payload:
                    yield AudioFrame(payload=payload)

            elif event == "stop":
                log.info("Twilio stream stopped")
                yield StreamStopped()
                return

    async def _send(self, message: dict) -> None:
        if self._closed:
            return
        try:
            await self._ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError):
            log.warning("Failed to send %s to Twilio", message.get("event"))

    async def send_audio(self, stream_id: str, payload: str) -> None:
        await self._send(
            {"event": "media", "streamSid": stream_id, "media": {"payload": payload}}
        )

    async def send_clear(self, stream_id: str) -> None:
        await self._send({"event": "clear", "streamSid": stream_id})

    async def close(self) -> None:
        """Close the Twilio Media Stream WebSocket."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except RuntimeError:
            pass  # Already closed
        log.info("Twilio channel closed")
