"""WebSocket client for the OpenAI Realtime API.

One ``RealtimeConnection`` per phone call.  The bridge sends JSON client
events through ``send`` and consumes server events from ``events``; audio
stays base64 G.711 u-law in both directions.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from callbridge.config import Settings

log = logging.getLogger("callbridge.realtime")

CONNECT_TIMEOUT = 15  # seconds
WS_MAX_SIZE = 16 * 1024 * 1024
WS_PING_INTERVAL = 20

AUDIO_FORMAT = "g711_ulaw"


def build_session_update(
    instructions: str,
    voice: str,
    tools: Optional[list[dict]] = None,
) -> dict:
    """``session.update`` event configuring a phone-audio session."""
    session: dict[str, Any] = {
        "instructions": instructions,
        "voice": voice,
        "modalities": ["audio", "text"],
        "input_audio_format": AUDIO_FORMAT,
        "output_audio_format": AUDIO_FORMAT,
        "turn_detection": {"type": "server_vad"},
        "input_audio_transcription": {"model": "whisper-1"},
    }
    if tools:
        session["tools"] = tools
        session["tool_choice"] = "auto"
    return {"type": "session.update", "session": session}


class RealtimeConnection:
    """A single realtime AI session over WebSocket."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._ws: Any = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def connect(self) -> None:
        """Open the WebSocket.  Raises on timeout or handshake failure."""
        url = f"{self._settings.openai_realtime_url}?model={self._settings.openai_realtime_model}"
        headers = {
            "Authorization": f"Bearer {self._settings.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        log.info("Connecting to realtime model %s", self._settings.openai_realtime_model)
        self._ws = await asyncio.wait_for(
            websockets.connect(
                url,
                additional_headers=headers,
                max_size=WS_MAX_SIZE,
                ping_interval=WS_PING_INTERVAL,
            ),
            timeout=CONNECT_TIMEOUT,
        )

    async def send(self, event: dict) -> bool:
        """Send one client event.  Returns False when the socket is gone."""
        if not self.is_open:
            return False
        try:
            await self._ws.send(json.dumps(event))
            return True
        except ConnectionClosed:
            log.warning("Realtime socket closed while sending %s", event.get("type"))
            self._closed = True
            return False

    async def events(self) -> AsyncIterator[dict]:
        """Yield decoded server events until the socket closes."""
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                try:
                    event = json.loads(raw)
                except ValueError:
                    log.warning("Ignoring non-JSON realtime message")
                    continue
                if isinstance(event, dict):
                    yield event
        except ConnectionClosed as exc:
            log.info("Realtime socket closed: %s", exc)
        finally:
            self._closed = True

    async def close(self) -> None:
        if self._ws is None or self._closed:
            self._closed = True
            return
        self._closed = True
        try:
            await self._ws.close()
        except ConnectionClosed:
            pass
        log.info("Realtime connection closed")
