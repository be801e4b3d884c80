"""Per-call bridge between a downstream transport and the realtime endpoint.

Bridges transport audio (phone or browser) with the realtime AI client using
TaskGroup:
- Uplink: transport events -> turn-taking controller -> AI
- Downlink: AI events -> turn-taking controller -> transport

The first direction to finish ends the call: the other one is cancelled,
then the AI connection and the transport are closed.
"""

import asyncio
from typing import Optional

import structlog

from app.ai.duplex_base import AiEventType, RealtimeClient, SessionConfig
from app.bridge.turn_taking import TurnPolicy, TurnTakingController
from app.config import TurnSettings
from app.core.agent_config import AgentConfig
from app.core.constants import AudioConstants
from app.core.session import CallSession
from app.services.audit import AuditSink
from app.transport.base import TransportAdapter, TransportEvent, TransportEventType


class DirectionFinished(Exception):
    """Raised by a direction task when its side of the call is over."""

    def __init__(self, direction: str, reason: str) -> None:
        super().__init__(f"{direction}: {reason}")
        self.direction = direction
        self.reason = reason


class CallBridge:
    """Owns one call: its session, transport, AI client and turn-taking."""

    def __init__(
        self,
        session: CallSession,
        transport: TransportAdapter,
        upstream: RealtimeClient,
        policy: TurnPolicy,
        agent: Optional[AgentConfig] = None,
        voice: Optional[str] = None,
        default_voice: str = "alloy",
        turn_settings: Optional[TurnSettings] = None,
        connect_timeout: float = 10.0,
        audit: Optional[AuditSink] = None
    ) -> None:
        """Initialize bridge.

        Args:
            session: Call session (shared with transport and controller only)
            transport: Downstream adapter for this call
            upstream: Realtime client for this call, not yet connected
            policy: Turn policy
            agent: Persona (instructions, greeting, contexts)
            voice: Per-call voice override
            default_voice: Voice used when neither the call nor the persona sets one
            turn_settings: Cooldown and barge-in settings
            connect_timeout: Seconds to wait for the AI connection
            audit: Optional audit sink
        """
        turn_settings = turn_settings or TurnSettings()

        self.session = session
        self.transport = transport
        self.upstream = upstream
        self.agent = agent or AgentConfig()
        self._voice = voice or self.agent.voice or default_voice
        self._connect_timeout = connect_timeout
        self._audit_sink = audit

        self.controller = TurnTakingController(
            session=session,
            upstream=upstream,
            transport=transport,
            policy=policy,
            interrupt_cooldown_ms=turn_settings.interrupt_cooldown_ms,
            drop_audio_during_cooldown=turn_settings.drop_audio_during_cooldown,
            barge_in_enabled=turn_settings.barge_in_enabled
        )

        self._greeted = False
        self._end_reason: Optional[str] = None

        # Statistics
        self._uplink_frames = 0
        self._downlink_chunks = 0

        self._logger = structlog.get_logger(__name__).bind(session_id=session.id)

    @property
    def end_reason(self) -> Optional[str]:
        """Why the call ended, once run() has returned."""
        return self._end_reason

    def session_config(self) -> SessionConfig:
        """Session configuration for the current call context."""
        return SessionConfig(
            instructions=self.agent.instructions_for(self.session.context),
            voice=self._voice,
            sample_rate=AudioConstants.AI_RATE,
            turn_detection=self.controller.policy.turn_detection()
        )

    async def run(self) -> None:
        """Run the call until either side ends it."""
        self._audit("session.started", transport=self.session.transport.value)
        self._logger.info(
            "CallBridge starting",
            transport=self.session.transport.value,
            policy=self.controller.policy.name,
            context=self.session.context
        )

        try:
            await self._connect_upstream()
        except ConnectionError as e:
            self._end_reason = "upstream_connect_failed"
            self._logger.error("AI connection failed", error=str(e))
            await self.transport.send_error(f"Failed to connect to AI service: {e}")
            await self._teardown()
            return

        try:
            await self.upstream.initialize(self.session_config())
            await self.transport.open()

            async with asyncio.TaskGroup() as tg:
                tg.create_task(
                    self._uplink_task(),
                    name=f"bridge-uplink-{self.session.id}"
                )
                tg.create_task(
                    self._downlink_task(),
                    name=f"bridge-downlink-{self.session.id}"
                )

        except* DirectionFinished as eg:
            finished = eg.exceptions[0]
            self._end_reason = finished.reason
            self._logger.info(
                "CallBridge direction finished",
                direction=finished.direction,
                reason=finished.reason
            )

        except* Exception as eg:
            self._end_reason = "error"
            for exc in eg.exceptions:
                self._logger.error(
                    f"Exception: {type(exc).__name__}: {exc}",
                    exc_info=exc
                )
            await self.transport.send_error("Internal bridge error")

        finally:
            await self._teardown()

    async def _connect_upstream(self) -> None:
        try:
            async with asyncio.timeout(self._connect_timeout):
                await self.upstream.connect()
        except TimeoutError as e:
            raise ConnectionError(f"timed out after {self._connect_timeout}s") from e

    async def _teardown(self) -> None:
        try:
            await self.upstream.close()
        except Exception as e:
            self._logger.error(f"Error closing AI client: {e}", exc_info=True)

        try:
            await self.transport.close()
        except Exception as e:
            self._logger.error(f"Error closing transport: {e}", exc_info=True)

        stats = self.controller.get_stats()
        self._audit("session.ended", reason=self._end_reason, **stats)
        self._logger.info(
            "CallBridge stopped",
            reason=self._end_reason,
            uplink_frames=self._uplink_frames,
            downlink_chunks=self._downlink_chunks,
            **stats
        )

    async def _uplink_task(self) -> None:
        """Uplink: transport -> controller -> AI."""
        self._logger.debug("Uplink task started")

        async for event in self.transport.events():
            if event.type == TransportEventType.AUDIO_IN:
                self._uplink_frames += 1
                await self.controller.on_audio(event.audio or b"")

                if self._uplink_frames % AudioConstants.LOG_INTERVAL_STATS == 0:
                    self._logger.debug("Bridge uplink stats", frames=self._uplink_frames)

            elif event.type == TransportEventType.STREAM_STARTED:
                await self._on_stream_started(event)

            elif event.type == TransportEventType.BARGE_IN:
                await self.controller.on_client_interrupt()

            elif event.type == TransportEventType.PLAYBACK_DRAINED:
                self.controller.on_playback_drained()

            elif event.type == TransportEventType.STREAM_STOPPED:
                raise DirectionFinished("uplink", "stream_stopped")

        raise DirectionFinished("uplink", "downstream_closed")

    async def _on_stream_started(self, event: TransportEvent) -> None:
        context = event.custom_parameters.get("context")
        if context and context != self.session.context:
            self.session.context = context
            self._logger.info("Call context from stream parameters", context=context)
            await self.upstream.initialize(self.session_config())

        self._audit("stream.started", stream_token=event.stream_token)

        if self.agent.greeting and not self._greeted:
            self._greeted = True
            await self.upstream.send_greeting(self.agent.greeting)

    async def _downlink_task(self) -> None:
        """Downlink: AI -> controller -> transport."""
        self._logger.debug("Downlink task started")

        async for event in self.upstream.events():
            if event.type == AiEventType.AUDIO_DELTA:
                if event.audio and self.controller.on_audio_delta(event.item_id, event.audio):
                    await self.transport.send_audio(event.audio)
                    self._downlink_chunks += 1

                    if self._downlink_chunks % AudioConstants.LOG_INTERVAL_STATS == 0:
                        self._logger.debug("Bridge downlink stats", chunks=self._downlink_chunks)

            elif event.type == AiEventType.SPEECH_STARTED:
                await self.controller.on_upstream_speech_started()

            elif event.type == AiEventType.RESPONSE_STARTED:
                self.controller.on_response_started()

            elif event.type == AiEventType.RESPONSE_DONE:
                self.controller.on_response_done()

            elif event.type == AiEventType.TRANSCRIPT_DONE:
                self._audit("transcript", role="assistant", text=event.text)

            elif event.type == AiEventType.ERROR:
                self._audit("upstream.error", error=event.error)
                await self.transport.send_error(event.error or "AI service error")
                raise DirectionFinished("downlink", "upstream_error")

            elif event.type == AiEventType.DISCONNECTED:
                await self.transport.send_error(event.error or "AI service disconnected")
                raise DirectionFinished("downlink", "upstream_disconnected")

        raise DirectionFinished("downlink", "upstream_closed")

    def _audit(self, event: str, **metadata) -> None:
        if self._audit_sink is not None:
            self._audit_sink.record(event, self.session.id, metadata)
