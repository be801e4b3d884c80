"""Tests for the per-call bridge."""

import asyncio
import base64
from typing import Callable

import pytest

from app.ai.duplex_base import AiEventType
from app.ai.mock_duplex import MockRealtimeClient
from app.bridge.call_bridge import CallBridge
from app.bridge.turn_taking import EnergyVadPolicy, UpstreamVadPolicy
from app.core.agent_config import AgentConfig
from app.core.session import CallSession
from app.services.audit import AuditSink
from app.transport.browser import BrowserTransport
from app.transport.phone import PhoneTransport
from tests.fakes import FakeConnection, start_message


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def _audio_message(pcm: bytes) -> dict:
    return {"type": "audio", "data": base64.b64encode(pcm).decode()}


class FailingClient(MockRealtimeClient):
    """Realtime client whose connection attempt is refused."""

    async def connect(self) -> None:
        raise ConnectionError("connection refused")


class HangingClient(MockRealtimeClient):
    """Realtime client that never finishes connecting."""

    async def connect(self) -> None:
        await asyncio.Event().wait()


class BrokenAudioClient(MockRealtimeClient):
    """Realtime client that fails on the first audio frame."""

    async def send_audio(self, pcm16_24k: bytes) -> None:
        raise RuntimeError("encoder exploded")


@pytest.fixture
def audit() -> AuditSink:
    return AuditSink()


def _browser_bridge(
    connection: FakeConnection,
    upstream: MockRealtimeClient,
    audit: AuditSink,
    **kwargs
) -> CallBridge:
    session = CallSession.for_browser("browser-call")
    return CallBridge(
        session=session,
        transport=BrowserTransport(connection, session),
        upstream=upstream,
        policy=UpstreamVadPolicy(),
        audit=audit,
        **kwargs
    )


def _phone_bridge(
    connection: FakeConnection,
    upstream: MockRealtimeClient,
    **kwargs
) -> CallBridge:
    session = CallSession.for_phone("phone-call")
    return CallBridge(
        session=session,
        transport=PhoneTransport(connection, session),
        upstream=upstream,
        policy=UpstreamVadPolicy(),
        **kwargs
    )


class TestBrowserCall:
    """Test a browser call end to end against the mock endpoint."""

    @pytest.mark.asyncio
    async def test_audio_round_trip_then_stop(
        self,
        connection: FakeConnection,
        audit: AuditSink,
        silent_frame_24k: bytes
    ) -> None:
        """Test captured audio produces assistant audio, and stop ends the call."""
        upstream = MockRealtimeClient(response_after_frames=3)
        bridge = _browser_bridge(connection, upstream, audit)
        task = asyncio.create_task(bridge.run())

        await _until(lambda: connection.sent_with("type", "session.ready"))
        for _ in range(3):
            connection.feed_json(_audio_message(silent_frame_24k))

        await _until(lambda: len(connection.sent_with("type", "audio")) == 25)
        connection.feed_json({"type": "stop"})
        await asyncio.wait_for(task, timeout=2.0)

        assert bridge.end_reason == "stream_stopped"
        assert connection.sent[0]["type"] == "session"
        assert connection.sent[0]["sessionId"] == "browser-call"
        assert connection.closed
        assert not upstream.is_connected

        payload = base64.b64decode(connection.sent_with("type", "audio")[0]["payload"])
        assert len(payload) == 960

        events = [record.event for record in audit.for_session("browser-call")]
        assert events[0] == "session.started"
        assert "transcript" in events
        assert events[-1] == "session.ended"

    @pytest.mark.asyncio
    async def test_session_configured_before_audio(
        self,
        connection: FakeConnection,
        audit: AuditSink
    ) -> None:
        upstream = MockRealtimeClient()
        agent = AgentConfig(instructions="Answer in French.", voice="shimmer")
        bridge = _browser_bridge(connection, upstream, audit, agent=agent)
        connection.feed_json({"type": "stop"})

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        command, session_config = upstream.commands[0]
        assert command == "initialize"
        assert session_config.instructions == "Answer in French."
        assert session_config.voice == "shimmer"
        assert session_config.turn_detection is not None

    @pytest.mark.asyncio
    async def test_voice_precedence(self, connection: FakeConnection, audit: AuditSink) -> None:
        agent = AgentConfig(voice="shimmer")

        assert _browser_bridge(connection, MockRealtimeClient(), audit, agent=agent, voice="verse").session_config().voice == "verse"
        assert _browser_bridge(connection, MockRealtimeClient(), audit, agent=agent).session_config().voice == "shimmer"
        assert _browser_bridge(connection, MockRealtimeClient(), audit, default_voice="echo").session_config().voice == "echo"

    @pytest.mark.asyncio
    async def test_local_policy_disables_upstream_vad(
        self,
        connection: FakeConnection,
        audit: AuditSink
    ) -> None:
        session = CallSession.for_browser("browser-call")
        bridge = CallBridge(
            session=session,
            transport=BrowserTransport(connection, session),
            upstream=MockRealtimeClient(),
            policy=EnergyVadPolicy()
        )

        assert bridge.session_config().turn_detection is None

    @pytest.mark.asyncio
    async def test_client_interrupt(
        self,
        connection: FakeConnection,
        audit: AuditSink
    ) -> None:
        upstream = MockRealtimeClient()
        bridge = _browser_bridge(connection, upstream, audit)
        connection.feed_json({"type": "interrupt"})
        connection.feed_json({"type": "stop"})

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert ("cancel_response",) in upstream.commands
        assert connection.sent_with("type", "clear")

    @pytest.mark.asyncio
    async def test_downstream_disconnect(
        self,
        connection: FakeConnection,
        audit: AuditSink
    ) -> None:
        upstream = MockRealtimeClient()
        bridge = _browser_bridge(connection, upstream, audit)
        connection.disconnect()

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert bridge.end_reason == "downstream_closed"
        assert not upstream.is_connected


class TestFailures:
    """Test the call is torn down cleanly whatever ends it."""

    @pytest.mark.asyncio
    async def test_connect_failure_reported(
        self,
        connection: FakeConnection,
        audit: AuditSink
    ) -> None:
        bridge = _browser_bridge(connection, FailingClient(), audit)

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert bridge.end_reason == "upstream_connect_failed"
        [error] = connection.sent_with("type", "error")
        assert error["message"].startswith("Failed to connect to AI service")
        assert "connection refused" in error["message"]
        assert connection.sent_with("type", "session.ready") == []
        assert connection.closed

    @pytest.mark.asyncio
    async def test_connect_timeout(self, connection: FakeConnection, audit: AuditSink) -> None:
        bridge = _browser_bridge(connection, HangingClient(), audit, connect_timeout=0.05)

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert bridge.end_reason == "upstream_connect_failed"
        assert connection.sent_with("type", "error")

    @pytest.mark.asyncio
    async def test_upstream_error_ends_call(
        self,
        connection: FakeConnection,
        audit: AuditSink
    ) -> None:
        upstream = MockRealtimeClient()
        bridge = _browser_bridge(connection, upstream, audit)
        task = asyncio.create_task(bridge.run())

        await _until(lambda: connection.sent_with("type", "session.ready"))
        upstream._emit(AiEventType.ERROR, error="Session expired")
        await asyncio.wait_for(task, timeout=2.0)

        assert bridge.end_reason == "upstream_error"
        assert connection.sent_with("type", "error")[0]["message"] == "Session expired"
        assert connection.closed
        assert not upstream.is_connected

    @pytest.mark.asyncio
    async def test_upstream_disconnect_ends_call(
        self,
        connection: FakeConnection,
        audit: AuditSink
    ) -> None:
        upstream = MockRealtimeClient()
        bridge = _browser_bridge(connection, upstream, audit)
        task = asyncio.create_task(bridge.run())

        await _until(lambda: connection.sent_with("type", "session.ready"))
        upstream._emit(AiEventType.DISCONNECTED, error="Upstream connection closed")
        await asyncio.wait_for(task, timeout=2.0)

        assert bridge.end_reason == "upstream_disconnected"
        assert connection.closed

    @pytest.mark.asyncio
    async def test_unexpected_exception(
        self,
        connection: FakeConnection,
        audit: AuditSink,
        silent_frame_24k: bytes
    ) -> None:
        upstream = BrokenAudioClient()
        bridge = _browser_bridge(connection, upstream, audit)
        connection.feed_json(_audio_message(silent_frame_24k))

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert bridge.end_reason == "error"
        assert connection.sent_with("type", "error")[-1]["message"] == "Internal bridge error"
        assert connection.closed
        assert audit.for_session("browser-call")[-1].event == "session.ended"


class TestPhoneCall:
    """Test phone-specific call behaviour."""

    @pytest.mark.asyncio
    async def test_greeting_sent_once(self, connection: FakeConnection) -> None:
        """Test a stream restart does not greet the caller again."""
        upstream = MockRealtimeClient()
        agent = AgentConfig(greeting="Thanks for calling!")
        bridge = _phone_bridge(connection, upstream, agent=agent)

        connection.feed_json(start_message("ST1"))
        connection.feed_json(start_message("ST2"))
        connection.feed_json({"event": "stop", "streamSid": "ST2"})

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        greetings = [c for c in upstream.commands if c[0] == "send_greeting"]
        assert greetings == [("send_greeting", "Thanks for calling!")]
        assert bridge.session.stream_token == "ST2"
        assert bridge.end_reason == "stream_stopped"

    @pytest.mark.asyncio
    async def test_context_from_stream_parameters(self, connection: FakeConnection) -> None:
        """Test a context parameter reconfigures the session."""
        upstream = MockRealtimeClient()
        agent = AgentConfig(instructions="General help.", contexts={"sales": "Sell things."})
        bridge = _phone_bridge(connection, upstream, agent=agent)

        connection.feed_json(start_message("ST1", context="sales"))
        connection.feed_json({"event": "stop"})

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        configs = [c[1] for c in upstream.commands if c[0] == "initialize"]
        assert [c.instructions for c in configs] == ["General help.", "Sell things."]
        assert bridge.session.context == "sales"

    @pytest.mark.asyncio
    async def test_same_context_not_reinitialized(self, connection: FakeConnection) -> None:
        upstream = MockRealtimeClient()
        bridge = _phone_bridge(connection, upstream)

        connection.feed_json(start_message("ST1", context="general"))
        connection.feed_json({"event": "stop"})

        await asyncio.wait_for(bridge.run(), timeout=2.0)

        assert len([c for c in upstream.commands if c[0] == "initialize"]) == 1

    @pytest.mark.asyncio
    async def test_assistant_audio_reaches_caller(
        self,
        connection: FakeConnection,
        ulaw_frame_8k: bytes
    ) -> None:
        """Test mock responses come back as μ-law media with marks."""
        upstream = MockRealtimeClient(response_after_frames=2)
        bridge = _phone_bridge(connection, upstream)
        task = asyncio.create_task(bridge.run())

        connection.feed_json(start_message("ST1"))
        for timestamp in (20, 40):
            connection.feed_json({
                "event": "media",
                "streamSid": "ST1",
                "media": {
                    "track": "inbound",
                    "timestamp": str(timestamp),
                    "payload": base64.b64encode(ulaw_frame_8k).decode(),
                },
            })

        await _until(lambda: len(connection.sent_with("event", "media")) == 25)
        connection.feed_json({"event": "stop"})
        await asyncio.wait_for(task, timeout=2.0)

        media = connection.sent_with("event", "media")
        assert all(m["streamSid"] == "ST1" for m in media)
        assert len(base64.b64decode(media[0]["media"]["payload"])) == 160
        assert len(connection.sent_with("event", "mark")) == 25

    @pytest.mark.asyncio
    async def test_played_marks_end_utterance(
        self,
        connection: FakeConnection,
        ulaw_frame_8k: bytes
    ) -> None:
        """Test the utterance stays tracked until the caller acknowledges every mark."""
        upstream = MockRealtimeClient(response_after_frames=1)
        bridge = _phone_bridge(connection, upstream)
        task = asyncio.create_task(bridge.run())

        connection.feed_json(start_message("ST1"))
        connection.feed_json({
            "event": "media",
            "streamSid": "ST1",
            "media": {"track": "inbound", "timestamp": "20", "payload": base64.b64encode(ulaw_frame_8k).decode()},
        })

        await _until(lambda: len(connection.sent_with("event", "mark")) == 25)
        await _until(lambda: not bridge.controller.responding)
        assert bridge.session.playback.in_flight

        for _ in range(25):
            connection.feed_json({"event": "mark", "streamSid": "ST1", "mark": {"name": "responsePart"}})
        await _until(lambda: not bridge.session.playback.in_flight)

        connection.feed_json({"event": "stop"})
        await asyncio.wait_for(task, timeout=2.0)

        assert not any(c[0] == "truncate" for c in upstream.commands)
