"""TwiML documents that point Twilio at the media-stream WebSockets."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlsplit, urlunsplit
from xml.etree.ElementTree import Element, SubElement, tostring

from callbridge.models.caller import CallMode

SAY_VOICE = "alice"
RECEPTIONIST_GREETING = "Connecting you now."
RING_THEN_AI_GREETING = "One moment."
COACH_GREETING = "Conectando con tu coach de español."
UNAVAILABLE_MESSAGE = "This service is not configured yet. Please try again later."


def digits_only(number: Optional[str]) -> str:
    return re.sub(r"\D", "", number or "")


def resolve_stream_url(
    path: str,
    public_base_url: str = "",
    host: str = "",
    forwarded_proto: str = "",
) -> str:
    """WebSocket URL for ``path``.

    ``PUBLIC_BASE_URL`` wins when set (``https`` → ``wss``); otherwise the
    request host is used, with ``wss`` behind a TLS-terminating proxy.
    """
    if public_base_url:
        parts = urlsplit(public_base_url.rstrip("/"))
        scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
        return urlunsplit((scheme, parts.netloc, path, "", ""))
    proto = forwarded_proto.split(",")[0].strip()
    scheme = "wss" if proto == "https" else "ws"
    return f"{scheme}://{host or 'localhost:8080'}{path}"


XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'


def _render(root: Element) -> str:
    return XML_DECLARATION + tostring(root, encoding="unicode")


def _stream_parameters(
    mode: CallMode,
    from_number: Optional[str] = None,
    to_number: Optional[str] = None,
    call_sid: Optional[str] = None,
    user_id: Optional[str] = None,
) -> list[tuple[str, str]]:
    params = [("mode", mode.value)]
    for name, value in (
        ("userId", user_id),
        ("from", from_number),
        ("to", to_number),
        ("callSid", call_sid),
        ("businessId", to_number),
    ):
        if value:
            params.append((name, value))
    return params


def _append_stream(
    root: Element, greeting: str, stream_url: str, params: list[tuple[str, str]]
) -> None:
    say = SubElement(root, "Say", voice=SAY_VOICE)
    say.text = greeting
    connect = SubElement(root, "Connect")
    stream = SubElement(connect, "Stream", url=stream_url)
    for name, value in params:
        SubElement(stream, "Parameter", name=name, value=value)


def build_stream_response(
    stream_url: str,
    mode: CallMode,
    greeting: str,
    from_number: Optional[str] = None,
    to_number: Optional[str] = None,
    call_sid: Optional[str] = None,
    user_id: Optional[str] = None,
) -> str:
    """Say a greeting, then bridge the call to ``stream_url``."""
    root = Element("Response")
    params = _stream_parameters(mode, from_number, to_number, call_sid, user_id)
    _append_stream(root, greeting, stream_url, params)
    return _render(root)


def build_ring_then_ai_response(
    stream_url: str,
    owner_number: str,
    timeout_seconds: int,
    from_number: Optional[str] = None,
    to_number: Optional[str] = None,
    call_sid: Optional[str] = None,
) -> str:
    """Ring the owner first; if nobody answers, hand the call to the AI."""
    root = Element("Response")
    dial = SubElement(root, "Dial", timeout=str(timeout_seconds), answerOnBridge="false")
    number = SubElement(dial, "Number")
    number.text = owner_number
    params = _stream_parameters(CallMode.RECEPTIONIST, from_number, to_number, call_sid)
    _append_stream(root, RING_THEN_AI_GREETING, stream_url, params)
    return _render(root)


def build_unavailable_response(message: str = UNAVAILABLE_MESSAGE) -> str:
    root = Element("Response")
    say = SubElement(root, "Say", voice=SAY_VOICE)
    say.text = message
    SubElement(root, "Hangup")
    return _render(root)


def should_ring_owner(
    enabled: bool, owner_number: Optional[str], to_number: Optional[str]
) -> bool:
    """Ring-then-AI applies unless the owner's number is the one being called."""
    if not enabled or not owner_number:
        return False
    owner = digits_only(owner_number)
    return not owner or owner != digits_only(to_number)
