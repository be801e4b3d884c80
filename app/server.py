"""HTTP and WebSocket surface of the voice bridge (FastAPI).

Routes:
- GET /, /health, /health/detailed: liveness and status
- GET|POST /twilio/voice: TwiML connecting a call to the media stream
- WS /media-stream (alias /phone): telephony media stream
- WS /voice/stream (alias /web): browser microphone
- GET /sessions/{id}, /sessions/{id}/audit: session lookup (API key)
"""

import hmac
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional
from urllib.parse import urlencode, urlsplit

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket
from fastapi.responses import JSONResponse
from twilio.twiml.voice_response import Connect, VoiceResponse

from app.ai.duplex_base import RealtimeClient
from app.bridge.call_bridge import CallBridge
from app.bridge.turn_taking import create_turn_policy
from app.config import Config
from app.core.agent_config import AgentConfig
from app.core.session import CallSession
from app.services.audit import AuditSink
from app.services.rate_limiter import RateLimiter
from app.services.session_registry import SessionRegistry
from app.transport.base import StarletteConnection, TransportAdapter
from app.transport.browser import BrowserTransport
from app.transport.phone import PhoneTransport


logger = structlog.get_logger(__name__)

UpstreamFactory = Callable[[], RealtimeClient]

RATE_LIMIT_EXEMPT_PATHS = frozenset({"/", "/health", "/health/detailed"})

WS_UNAUTHORIZED = 4001


def client_ip(request: Request) -> str:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def _key_matches(provided: Optional[str], expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def build_twiml(stream_url: str, context: Optional[str] = None) -> str:
    """TwiML connecting the call to a media stream WebSocket.

    Args:
        stream_url: wss:// URL of the phone WebSocket
        context: Optional call context, passed as a stream parameter too

    Returns:
        TwiML document
    """
    response = VoiceResponse()
    connect = Connect()
    stream = connect.stream(url=stream_url)
    if context:
        stream.parameter(name="context", value=context)
    response.append(connect)
    return str(response)


def create_app(
    cfg: Config,
    upstream_factory: UpstreamFactory,
    agent: Optional[AgentConfig] = None,
    registry: Optional[SessionRegistry] = None,
    audit: Optional[AuditSink] = None,
    rate_limiter: Optional[RateLimiter] = None
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        cfg: Application configuration
        upstream_factory: Creates one realtime client per call
        agent: Persona; defaults to built-in instructions
        registry: Session registry (new in-memory one if omitted)
        audit: Audit sink (new in-memory one if omitted)
        rate_limiter: HTTP rate limiter (built from settings if omitted)

    Returns:
        FastAPI application
    """
    agent = agent or AgentConfig()
    registry = registry or SessionRegistry()
    audit = audit or AuditSink()
    rate_limiter = rate_limiter or RateLimiter(
        max_requests=cfg.server.rate_limit_requests,
        window_s=cfg.server.rate_limit_window_s,
        sweep_interval_s=cfg.server.rate_limit_sweep_s
    )
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await rate_limiter.start()
        logger.info(
            "Voice bridge ready",
            test_mode=cfg.ai.test_mode,
            turn_policy=cfg.turn.turn_policy,
            auth_enabled=bool(cfg.server.api_key)
        )
        try:
            yield
        finally:
            await rate_limiter.stop()

    app = FastAPI(title="Realtime Voice Bridge", version="0.1.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.audit = audit
    app.state.rate_limiter = rate_limiter

    async def require_api_key(request: Request) -> None:
        if not cfg.server.api_key:
            return
        authorization = request.headers.get("authorization", "")
        provided = (
            authorization[len("Bearer "):] if authorization.startswith("Bearer ") else None
        ) or request.headers.get("x-api-key")
        if not _key_matches(provided, cfg.server.api_key):
            logger.warning("Unauthorized request", path=request.url.path, ip=client_ip(request))
            raise HTTPException(status_code=401, detail="Valid API key required")

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if request.url.path in RATE_LIMIT_EXEMPT_PATHS:
            return await call_next(request)

        decision = rate_limiter.check(client_ip(request))
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
        }
        if not decision.allowed:
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "retryAfter": decision.retry_after},
                headers={**headers, "Retry-After": str(decision.retry_after)}
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response

    @app.get("/")
    async def root() -> dict:
        return {"service": "realtime-voice-bridge", "status": "ok"}

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/health/detailed")
    async def health_detailed() -> dict:
        return {
            "status": "ok",
            "uptime_s": round(time.time() - started_at, 1),
            "upstream_configured": bool(cfg.ai.openai_api_key),
            "test_mode": cfg.ai.test_mode,
            "turn_policy": cfg.turn.turn_policy,
            "active_sessions": registry.active_count(),
        }

    @app.api_route("/twilio/voice", methods=["GET", "POST"])
    async def twilio_voice(request: Request, context: Optional[str] = None) -> Response:
        context = context or "general"
        stream_url = _phone_stream_url(request, context)
        logger.info("Voice webhook", context=context, stream_url=stream_url)
        return Response(
            content=build_twiml(stream_url, context if context != "general" else None),
            media_type="text/xml"
        )

    def _phone_stream_url(request: Request, context: str) -> str:
        if cfg.server.twilio_ws_url:
            url = cfg.server.twilio_ws_url
        else:
            if cfg.server.server_public_url:
                host = urlsplit(cfg.server.server_public_url).netloc
            else:
                host = request.headers.get("host", "localhost")
            url = f"wss://{host}/media-stream"
        if context != "general":
            url += ("&" if "?" in url else "?") + urlencode({"context": context})
        return url

    @app.get("/sessions/{session_id}", dependencies=[Depends(require_api_key)])
    async def get_session(session_id: str) -> dict:
        record = registry.get(session_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return record.to_dict()

    @app.get("/sessions/{session_id}/audit", dependencies=[Depends(require_api_key)])
    async def get_session_audit(session_id: str) -> dict:
        records = audit.for_session(session_id)
        if registry.get(session_id) is None and not records:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session_id": session_id, "events": [record.to_dict() for record in records]}

    async def _run_bridge(session: CallSession, transport: TransportAdapter, voice: Optional[str]) -> None:
        try:
            upstream = upstream_factory()
        except ValueError as e:
            logger.error("Cannot create AI client", session_id=session.id, error=str(e))
            await transport.send_error(str(e))
            await transport.close(code=1011)
            return

        bridge = CallBridge(
            session=session,
            transport=transport,
            upstream=upstream,
            policy=create_turn_policy(cfg.turn),
            agent=agent,
            voice=voice,
            default_voice=cfg.ai.openai_voice,
            turn_settings=cfg.turn,
            connect_timeout=cfg.ai.connect_timeout,
            audit=audit
        )
        await bridge.run()

    @app.websocket("/media-stream")
    @app.websocket("/phone")
    async def media_stream(websocket: WebSocket, context: Optional[str] = None) -> None:
        await websocket.accept()

        session_id = registry.create_session("phone", context=context)
        session = CallSession.for_phone(session_id, context=context or "general")
        transport = PhoneTransport(
            StarletteConnection(websocket),
            session,
            resampler_quality=cfg.audio.resampler_quality
        )
        try:
            await _run_bridge(session, transport, voice=None)
        finally:
            registry.end_session(session_id)

    @app.websocket("/voice/stream")
    @app.websocket("/web")
    async def voice_stream(
        websocket: WebSocket,
        token: Optional[str] = None,
        voice: Optional[str] = None
    ) -> None:
        await websocket.accept()

        if cfg.server.api_key and not _key_matches(token, cfg.server.api_key):
            logger.warning("Unauthorized WebSocket connection", path=websocket.url.path)
            await websocket.close(code=WS_UNAUTHORIZED, reason="Unauthorized: Invalid or missing token")
            return

        session_id = registry.create_session("browser", voice=voice)
        session = CallSession.for_browser(session_id)
        transport = BrowserTransport(
            StarletteConnection(websocket),
            session,
            capture_rate=cfg.audio.browser_capture_rate,
            test_mode=cfg.ai.test_mode,
            resampler_quality=cfg.audio.resampler_quality
        )
        try:
            await _run_bridge(session, transport, voice=voice)
        finally:
            registry.end_session(session_id)

    return app
