"""Tests for the browser microphone adapter."""

import base64
import json

import numpy as np
import pytest

from app.core.session import CallSession
from app.transport.base import TransportEventType
from app.transport.browser import BrowserTransport
from tests.fakes import FakeConnection


def _b64(samples: np.ndarray) -> str:
    return base64.b64encode(samples.astype(np.int16).tobytes()).decode("ascii")


class TestBrowserOpen:
    """Test the opening handshake."""

    @pytest.mark.asyncio
    async def test_open_announces_session(
        self,
        connection: FakeConnection,
        browser_session: CallSession
    ) -> None:
        """Test session and ready messages precede the stream start."""
        transport = BrowserTransport(connection, browser_session, test_mode=True)
        await transport.open()

        assert connection.sent == [
            {"type": "session", "sessionId": "browser-session"},
            {"type": "session.ready", "testMode": True},
        ]

        connection.disconnect()
        types = [event.type async for event in transport.events()]
        assert types == [TransportEventType.STREAM_STARTED]


class TestBrowserInbound:
    """Test parsing of browser messages."""

    def test_audio_message(self, browser_transport: BrowserTransport) -> None:
        samples = np.arange(480)
        events = browser_transport.handle_message(json.dumps({"type": "audio", "data": _b64(samples)}))

        assert len(events) == 1
        assert events[0].type == TransportEventType.AUDIO_IN
        assert np.array_equal(np.frombuffer(events[0].audio, dtype=np.int16), samples)

    def test_append_message_alias(self, browser_transport: BrowserTransport) -> None:
        samples = np.full(480, 7)
        message = {"type": "input_audio_buffer.append", "audio": _b64(samples)}

        events = browser_transport.handle_message(json.dumps(message))
        assert np.array_equal(np.frombuffer(events[0].audio, dtype=np.int16), samples)

    def test_binary_frame(self, browser_transport: BrowserTransport) -> None:
        samples = np.arange(-240, 240, dtype=np.int16)
        events = browser_transport.handle_message(samples.tobytes())

        assert events[0].type == TransportEventType.AUDIO_IN
        assert events[0].audio == samples.tobytes()

    def test_48k_capture_is_decimated(self, connection: FakeConnection, browser_session: CallSession) -> None:
        """Test 48kHz worklet audio is brought down to 24kHz."""
        transport = BrowserTransport(connection, browser_session, capture_rate=48000)
        samples = np.arange(960)

        events = transport.handle_message(json.dumps({"type": "audio", "data": _b64(samples)}))

        received = np.frombuffer(events[0].audio, dtype=np.int16)
        assert len(received) == 480
        assert np.array_equal(received, samples[::2])

    def test_interrupt_and_stop(self, browser_transport: BrowserTransport) -> None:
        interrupt = browser_transport.handle_message(json.dumps({"type": "interrupt"}))
        assert [e.type for e in interrupt] == [TransportEventType.BARGE_IN]

        stop = browser_transport.handle_message(json.dumps({"type": "stop"}))
        assert [e.type for e in stop] == [TransportEventType.STREAM_STOPPED]

    def test_start_is_informational(self, browser_transport: BrowserTransport) -> None:
        assert browser_transport.handle_message(json.dumps({"type": "start"})) == []

    @pytest.mark.parametrize("raw", [
        "{bad json",
        json.dumps({"type": "audio"}),
        json.dumps({"type": "audio", "data": "@@@"}),
        json.dumps({"type": "audio", "data": base64.b64encode(b"\x01\x02\x03").decode()}),
        b"\x01\x02\x03",
    ])
    def test_malformed_messages_dropped(self, browser_transport: BrowserTransport, raw) -> None:
        """Test bad JSON, bad base64 and odd-length PCM are dropped."""
        assert browser_transport.handle_message(raw) == []


class TestBrowserOutbound:
    """Test outbound messages."""

    @pytest.mark.asyncio
    async def test_send_audio_passthrough(self, browser_transport: BrowserTransport, connection: FakeConnection) -> None:
        pcm16 = np.arange(480, dtype=np.int16).tobytes()
        await browser_transport.send_audio(pcm16)

        assert connection.sent == [{"type": "audio", "payload": base64.b64encode(pcm16).decode("ascii")}]

    @pytest.mark.asyncio
    async def test_clear_and_error(self, browser_transport: BrowserTransport, connection: FakeConnection) -> None:
        await browser_transport.clear_playback()
        await browser_transport.send_error("AI service unavailable")

        assert connection.sent == [
            {"type": "clear"},
            {"type": "error", "message": "AI service unavailable"},
        ]
        assert not browser_transport.has_pending_playback

    @pytest.mark.asyncio
    async def test_send_after_close_is_dropped(self, browser_transport: BrowserTransport, connection: FakeConnection) -> None:
        await browser_transport.close()
        await browser_transport.send_audio(b"\x00\x00")

        assert connection.sent == []
        assert connection.closed
