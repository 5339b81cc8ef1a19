"""FastAPI application — Twilio webhooks and media-stream WebSockets.

Endpoints:

  GET  /health                 Health check
  POST /twilio/voice           Inbound call: TwiML for the receptionist stream
  POST /twilio/coach/voice     Outbound coaching call: TwiML for the coach stream
  POST /twilio/coach/status    Twilio status callback for coaching calls
  WS   /twilio/stream          Receptionist media stream
  WS   /twilio/stream/coach    Coaching media stream
  POST /coach/run              Admin: place coaching calls now

The call flow:
  1. Twilio posts the call to /twilio/voice (or /twilio/coach/voice)
  2. We answer with TwiML: <Say> then <Connect><Stream> with call metadata
  3. Twilio opens the stream WebSocket; a SessionBridge relays it to the
     realtime AI until either side hangs up
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, Query, Request, WebSocket
from fastapi.responses import JSONResponse, Response

from callbridge.auth import require_admin_key
from callbridge.booking.operations import BookingOperations
from callbridge.bridge.dispatcher import ToolDispatcher
from callbridge.bridge.notifications import NotificationLedger, PostCallNotifier, SmsSender
from callbridge.bridge.realtime_bridge import SessionBridge
from callbridge.calendar_providers.base import CalendarProvider
from callbridge.calendar_providers.gateway import CalendarGateway
from callbridge.calendar_providers.google import GoogleCalendarProvider
from callbridge.call_control import (
    COACH_GREETING,
    RECEPTIONIST_GREETING,
    build_ring_then_ai_response,
    build_stream_response,
    build_unavailable_response,
    resolve_stream_url,
    should_ring_owner,
)
from callbridge.call_status import apply_call_status
from callbridge.channels.twilio_channel import TwilioMediaStreamChannel
from callbridge.config import Settings, settings as default_settings
from callbridge.messaging import TwilioMessenger
from callbridge.models.caller import CallMode
from callbridge.realtime.client import RealtimeConnection
from callbridge.scheduler import RUN_NOW_LIMIT, CoachScheduler
from callbridge.storage import CallStore, create_store
from callbridge.tools.booking import build_tool_registry

log = logging.getLogger("callbridge.app")

_START_TIME = time.time()

XML_MEDIA_TYPE = "text/xml"


def _xml(body: str, status_code: int = 200) -> Response:
    return Response(content=body, media_type=XML_MEDIA_TYPE, status_code=status_code)


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[CalendarProvider] = None,
    store: Optional[CallStore] = None,
    messenger: Optional[TwilioMessenger] = None,
    realtime_factory: Optional[Callable[[], RealtimeConnection]] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Every collaborator can be injected; anything left out is built from
    ``settings``.
    """
    settings = settings or default_settings

    gateway = CalendarGateway(provider or GoogleCalendarProvider(settings))
    operations = BookingOperations(gateway, settings)
    dispatcher = ToolDispatcher(build_tool_registry(operations))
    if messenger is None and settings.twilio_configured:
        messenger = TwilioMessenger(settings)
    sms: Optional[SmsSender] = messenger
    notifier = PostCallNotifier(settings, NotificationLedger(), sms)
    make_realtime = realtime_factory or (lambda: RealtimeConnection(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in settings.validate_startup():
            log.warning(warning)

        app.state.store = store or await create_store(settings)
        scheduler = None
        if messenger is not None:
            scheduler = CoachScheduler(app.state.store, messenger)
            if settings.scheduler_enabled:
                scheduler.start()
        else:
            log.info("Coach scheduler disabled: Twilio or PUBLIC_BASE_URL not configured")
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()

    app = FastAPI(
        title="Call Bridge",
        description="Twilio media streams bridged to a realtime voice AI",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.notifier = notifier

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check — confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Twilio voice webhooks ──────────────────────────────────

    def _stream_url(request: Request, path: str) -> str:
        return resolve_stream_url(
            path,
            public_base_url=settings.public_base_url,
            host=request.headers.get("host", ""),
            forwarded_proto=request.headers.get("x-forwarded-proto", ""),
        )

    @app.post("/twilio/voice")
    async def twilio_voice(request: Request) -> Response:
        """Inbound call: optionally ring the owner, then bridge to the AI."""
        if not settings.openai_api_key:
            log.warning("Inbound call rejected: OPENAI_API_KEY not set")
            return _xml(build_unavailable_response(), status_code=503)

        form = await request.form()
        call_sid = form.get("CallSid")
        from_number = form.get("From")
        to_number = form.get("To")
        stream_url = _stream_url(request, "/twilio/stream")

        if should_ring_owner(settings.enable_ring_then_ai, settings.owner_forward_number, to_number):
            log.info("Call %s: ringing owner for %ss first", call_sid, settings.ring_timeout_seconds)
            return _xml(
                build_ring_then_ai_response(
                    stream_url,
                    owner_number=settings.owner_forward_number,
                    timeout_seconds=settings.ring_timeout_seconds,
                    from_number=from_number,
                    to_number=to_number,
                    call_sid=call_sid,
                )
            )

        log.info("Call %s: connecting stream to %s", call_sid, stream_url)
        return _xml(
            build_stream_response(
                stream_url,
                CallMode.RECEPTIONIST,
                RECEPTIONIST_GREETING,
                from_number=from_number,
                to_number=to_number,
                call_sid=call_sid,
            )
        )

    @app.post("/twilio/coach/voice")
    async def twilio_coach_voice(
        request: Request,
        user_id: Optional[str] = Query(default=None, alias="userId"),
    ) -> Response:
        """Outbound coaching call answered: bridge to the coach stream."""
        if not settings.openai_api_key:
            return _xml(build_unavailable_response(), status_code=503)

        form = await request.form()
        return _xml(
            build_stream_response(
                _stream_url(request, "/twilio/stream/coach"),
                CallMode.COACHING,
                COACH_GREETING,
                to_number=form.get("To"),
                call_sid=form.get("CallSid"),
                user_id=user_id,
            )
        )

    @app.post("/twilio/coach/status")
    async def twilio_coach_status(
        request: Request,
        user_id: Optional[str] = Query(default=None, alias="userId"),
    ) -> JSONResponse:
        form = await request.form()
        await apply_call_status(
            request.app.state.store,
            call_sid=form.get("CallSid"),
            status=form.get("CallStatus"),
            user_id=user_id,
        )
        return JSONResponse({"ok": True})

    # ── Media stream WebSockets ────────────────────────────────

    async def _bridge(websocket: WebSocket, mode: CallMode) -> None:
        await websocket.accept()
        bridge = SessionBridge(
            TwilioMediaStreamChannel(websocket),
            realtime_factory=make_realtime,
            dispatcher=dispatcher,
            settings=settings,
            store=websocket.app.state.store,
            notifier=notifier,
            default_mode=mode,
        )
        await bridge.run()

    @app.websocket("/twilio/stream")
    async def twilio_stream(websocket: WebSocket) -> None:
        await _bridge(websocket, CallMode.RECEPTIONIST)

    @app.websocket("/twilio/stream/coach")
    async def twilio_coach_stream(websocket: WebSocket) -> None:
        await _bridge(websocket, CallMode.COACHING)

    # ── Admin ──────────────────────────────────────────────────

    @app.post("/coach/run", dependencies=[Depends(require_admin_key)])
    async def coach_run(
        request: Request,
        limit: int = Query(default=RUN_NOW_LIMIT, ge=1, le=100),
    ) -> JSONResponse:
        scheduler: Optional[CoachScheduler] = request.app.state.scheduler
        if scheduler is None:
            return JSONResponse({"error": "Twilio is not configured"}, status_code=503)
        placed = await scheduler.run_now(limit=limit)
        return JSONResponse({"placed": placed})

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "callbridge.app:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
    )
