"""Outbound Twilio REST calls: post-call SMS and coaching calls."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from twilio.rest import Client

from callbridge.bridge.session import redact_pii
from callbridge.config import Settings

log = logging.getLogger("callbridge.messaging")

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


def build_public_url(base_url: str, path: str, params: Optional[dict[str, str]] = None) -> str:
    if not base_url:
        raise ValueError("PUBLIC_BASE_URL is missing")
    parts = urlsplit(base_url.rstrip("/"))
    query = urlencode(params) if params else ""
    return urlunsplit((parts.scheme, parts.netloc, path, query, ""))


class TwilioMessenger:
    """Thin async wrapper around the Twilio REST client.

    The Twilio SDK is blocking, so each request runs in the default
    thread pool.
    """

    def __init__(self, settings: Settings, client: Any = None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            s = self._settings
            if not (s.twilio_account_sid and s.twilio_auth_token):
                raise ValueError("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN is missing")
            self._client = Client(s.twilio_account_sid, s.twilio_auth_token)
        return self._client

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _from_number(self) -> str:
        number = self._settings.sms_from_number
        if not number:
            raise ValueError("TWILIO_FROM_NUMBER is missing")
        return number

    async def send_sms(self, to: str, body: str) -> None:
        client = self._get_client()
        message = await self._run_in_executor(
            client.messages.create, to=to, from_=self._from_number(), body=body
        )
        log.info("SMS %s queued to %s", getattr(message, "sid", "?"), redact_pii(to))

    async def place_coach_call(self, user_id: str, phone_e164: str) -> str:
        """Dial a learner; Twilio fetches the coaching TwiML from us. Returns the call SID."""
        base = self._settings.public_base_url
        params = {"userId": user_id}
        client = self._get_client()
        call = await self._run_in_executor(
            client.calls.create,
            to=phone_e164,
            from_=self._from_number(),
            url=build_public_url(base, "/twilio/coach/voice", params),
            status_callback=build_public_url(base, "/twilio/coach/status", params),
            status_callback_method="POST",
            status_callback_event=STATUS_CALLBACK_EVENTS,
        )
        log.info("Placed coach call %s to %s", call.sid, redact_pii(phone_e164))
        return call.sid
