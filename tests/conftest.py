"""Shared test fixtures and configuration."""

from typing import AsyncGenerator

import numpy as np
import pytest
import pytest_asyncio

from app.ai.mock_duplex import MockRealtimeClient
from app.core.session import CallSession
from app.transport.browser import BrowserTransport
from app.transport.phone import PhoneTransport
from tests.fakes import FakeClock, FakeConnection


@pytest.fixture
def frame_ms() -> int:
    """Frame duration in milliseconds."""
    return 20


@pytest.fixture
def ulaw_frame_8k() -> bytes:
    """20ms μ-law frame at 8kHz with a ramp of byte values."""
    return bytes(range(0, 160))


@pytest.fixture
def silent_frame_24k() -> bytes:
    """20ms of silence as PCM16 @ 24kHz (960 bytes)."""
    return np.zeros(480, dtype=np.int16).tobytes()


@pytest.fixture
def loud_frame_24k() -> bytes:
    """20ms of a loud 440Hz tone as PCM16 @ 24kHz."""
    t = np.arange(480) / 24000
    return (np.sin(2 * np.pi * 440 * t) * 10000).astype(np.int16).tobytes()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def phone_session() -> CallSession:
    return CallSession.for_phone("phone-session")


@pytest.fixture
def browser_session(fake_clock: FakeClock) -> CallSession:
    return CallSession.for_browser("browser-session", time_fn=fake_clock)


@pytest.fixture
def phone_transport(connection: FakeConnection, phone_session: CallSession) -> PhoneTransport:
    return PhoneTransport(connection, phone_session)


@pytest.fixture
def browser_transport(connection: FakeConnection, browser_session: CallSession) -> BrowserTransport:
    return BrowserTransport(connection, browser_session)


@pytest_asyncio.fixture
async def mock_upstream() -> AsyncGenerator[MockRealtimeClient, None]:
    """Connected mock realtime client."""
    client = MockRealtimeClient(response_after_frames=50)
    await client.connect()
    yield client
    await client.close()
