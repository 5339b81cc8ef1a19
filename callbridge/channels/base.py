"""MediaTransport ABC — the phone side of a bridged call.

A transport delivers three kinds of events to the bridge (stream start,
audio frame, stream stop) and accepts audio and playback-clear commands
back.  Audio payloads are opaque base64 strings in whatever codec the
call negotiated; nothing here decodes them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Union


@dataclass
class StreamStarted:
    """The transport announced a new media stream."""

    stream_id: str
    call_id: str
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass
class AudioFrame:
    """One inbound audio chunk, still base64-encoded."""

    payload: str


@dataclass
class StreamStopped:
    """The transport ended the stream (hang-up or stream close)."""


TransportEvent = Union[StreamStarted, AudioFrame, StreamStopped]


class MediaTransport(ABC):
    """Abstract media stream between the phone network and the bridge."""

    @abstractmethod
    def events(self) -> AsyncIterator[TransportEvent]:
        """Yield inbound events in the order the transport delivered them.

        The iterator ends after ``StreamStopped`` or when the connection
        drops.
        """

    @abstractmethod
    async def send_audio(self, stream_id: str, payload: str) -> None:
        """Play one base64 audio chunk to the caller."""

    @abstractmethod
    async def send_clear(self, stream_id: str) -> None:
        """Drop any audio the transport has queued for playback."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down the connection.  Safe to call multiple times."""
