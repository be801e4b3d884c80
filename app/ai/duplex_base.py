"""Base protocol and types for realtime AI duplex communication."""

import time
from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, AsyncIterator, Dict, Optional, Protocol, runtime_checkable

from app.core.stream_buffer import StreamBuffer


class AiEventType(Enum):
    """Events surfaced by an upstream session."""

    CONNECTED = auto()
    DISCONNECTED = auto()
    ERROR = auto()
    SESSION_UPDATED = auto()

    # Assistant audio and response lifecycle
    AUDIO_DELTA = auto()
    RESPONSE_STARTED = auto()
    RESPONSE_DONE = auto()
    TRANSCRIPT_DONE = auto()

    # Endpoint-side voice activity detection
    SPEECH_STARTED = auto()
    SPEECH_STOPPED = auto()


@dataclass
class AiEvent:
    """AI event data."""

    type: AiEventType
    data: Optional[Dict] = None
    timestamp: float = 0.0
    error: Optional[str] = None

    # AUDIO_DELTA: PCM16 @ 24kHz and the assistant item it belongs to
    audio: Optional[bytes] = None
    item_id: Optional[str] = None

    # TRANSCRIPT_DONE
    text: Optional[str] = None


@dataclass
class TurnDetection:
    """Endpoint-side turn detection parameters, passed through untouched."""

    type: str = "server_vad"
    threshold: float = 0.5
    silence_duration_ms: int = 700
    prefix_padding_ms: int = 300
    eagerness: str = "medium"

    def to_dict(self) -> Dict[str, Any]:
        if self.type == "semantic_vad":
            return {"type": "semantic_vad", "eagerness": self.eagerness}
        return {
            "type": self.type,
            "threshold": self.threshold,
            "silence_duration_ms": self.silence_duration_ms,
            "prefix_padding_ms": self.prefix_padding_ms,
        }


@dataclass
class SessionConfig:
    """Configuration sent once, right after connecting.

    turn_detection is None when the bridge decides turns locally.
    """

    instructions: str
    voice: str = "alloy"
    sample_rate: int = 24000
    encoding: str = "audio/pcm"
    turn_detection: Optional[TurnDetection] = field(default_factory=TurnDetection)
    model: Optional[str] = None


@runtime_checkable
class RealtimeClient(Protocol):
    """Protocol for upstream realtime session implementations.

    Commands are fire-and-forget: they return once the message is sent,
    their effect is confirmed later through events().
    """

    @property
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Connect to AI service.

        Raises:
            ConnectionError: If connection fails or times out
        """
        ...

    @abstractmethod
    async def initialize(self, session_config: SessionConfig) -> None:
        """Configure audio format, turn detection, voice and instructions."""
        ...

    @abstractmethod
    async def send_audio(self, pcm16_24k: bytes) -> None:
        """Append PCM16 @ 24kHz audio to the input buffer (no-op if not connected)."""
        ...

    @abstractmethod
    async def commit(self) -> None:
        """Flush the input buffer and request a response."""
        ...

    @abstractmethod
    async def cancel_response(self) -> None:
        """Cancel the response currently being generated."""
        ...

    @abstractmethod
    async def truncate(self, item_id: str, audio_end_ms: int) -> None:
        """Cut an assistant item down to the audio actually played."""
        ...

    @abstractmethod
    async def clear_input_buffer(self) -> None:
        """Discard audio appended but not yet committed."""
        ...

    @abstractmethod
    async def send_greeting(self, text: str) -> None:
        """Ask the assistant to speak first."""
        ...

    @abstractmethod
    def events(self) -> AsyncIterator[AiEvent]:
        """Iterate over events from AI until the session is closed."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close connection to AI service."""
        ...


class AiDuplexBase:
    """Base class for upstream clients with common functionality."""

    def __init__(self, sample_rate: int = 24000, frame_ms: int = 20) -> None:
        """Initialize base client.

        Args:
            sample_rate: Audio sample rate in Hz
            frame_ms: Frame duration in milliseconds
        """
        self._sample_rate = sample_rate
        self._frame_ms = frame_ms
        self._connected = False
        self._event_stream: StreamBuffer[AiEvent] = StreamBuffer()

        # Stats
        self._audio_frames_sent = 0
        self._audio_chunks_received = 0

    @property
    def sample_rate(self) -> int:
        """Get sample rate."""
        return self._sample_rate

    @property
    def is_connected(self) -> bool:
        """Check if connected."""
        return self._connected

    def get_stats(self) -> dict:
        return {
            "audio_frames_sent": self._audio_frames_sent,
            "audio_chunks_received": self._audio_chunks_received,
        }

    async def events(self) -> AsyncIterator[AiEvent]:
        """Iterate over events until the client is closed.

        Yields:
            AI events in the order the endpoint produced them
        """
        async for event in self._event_stream:
            yield event

    def _emit(self, event_type: AiEventType, **kwargs: Any) -> None:
        """Queue an event for the bridge."""
        self._event_stream.send_nowait(
            AiEvent(type=event_type, timestamp=time.time(), **kwargs)
        )

    def _close_events(self) -> None:
        self._event_stream.close()
