"""Per-call session state owned by the bridge."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional


class TransportKind(str, Enum):
    """Downstream transport of a call."""

    PHONE = "phone"
    BROWSER = "browser"


class AudioFormat(str, Enum):
    """Encoding contract with the downstream party."""

    ULAW_8K = "ulaw_8k"
    PCM16_24K = "pcm16_24k"


class MediaClock:
    """Millisecond clock used for truncation offsets.

    Timestamp-driven clocks (phone) only move when the transport reports a
    media timestamp, and never move backwards. Wall-clock driven clocks
    (browser) count milliseconds since the last reset.
    """

    def __init__(
        self,
        timestamp_driven: bool,
        time_fn: Callable[[], float] = time.monotonic
    ) -> None:
        self._timestamp_driven = timestamp_driven
        self._time_fn = time_fn
        self._value = 0
        self._origin = time_fn()

    @property
    def timestamp_driven(self) -> bool:
        return self._timestamp_driven

    def reset(self) -> None:
        """Restart the clock at 0 (stream start only)."""
        self._value = 0
        self._origin = self._time_fn()

    def advance(self, timestamp_ms: int) -> None:
        """Move a timestamp-driven clock forward to timestamp_ms."""
        if timestamp_ms > self._value:
            self._value = int(timestamp_ms)

    def now(self) -> int:
        """Current clock value in milliseconds."""
        if self._timestamp_driven:
            return self._value
        return int((self._time_fn() - self._origin) * 1000)


@dataclass
class PlaybackState:
    """The assistant utterance currently being streamed downstream.

    Kept after the endpoint finishes generating: the downstream party may
    still be playing it. Cleared on interruption or once playback drains.
    """

    last_assistant_item_id: Optional[str] = None
    response_started_at: Optional[int] = None
    audio_sent_ms: int = 0

    @property
    def in_flight(self) -> bool:
        return self.last_assistant_item_id is not None

    def start_chunk(self, item_id: Optional[str], clock_now: int, duration_ms: int = 0) -> None:
        """Record an audio chunk of item_id sent at clock_now.

        A chunk of a different item starts a new utterance.
        """
        if item_id and item_id != self.last_assistant_item_id:
            self.last_assistant_item_id = item_id
            self.response_started_at = clock_now
            self.audio_sent_ms = 0
        elif self.response_started_at is None:
            self.response_started_at = clock_now
        self.audio_sent_ms += duration_ms

    def elapsed_ms(self, clock_now: int) -> int:
        """Audio played so far: clock time since the first chunk, within what was sent."""
        if self.response_started_at is None:
            return 0
        return min(max(0, clock_now - self.response_started_at), self.audio_sent_ms)

    def reset(self) -> None:
        self.last_assistant_item_id = None
        self.response_started_at = None
        self.audio_sent_ms = 0


@dataclass
class CallSession:
    """State of one bridged connection.

    Created when the downstream transport connects, discarded on teardown.
    Only the bridge, its transport adapter and its turn-taking controller
    hold a reference.
    """

    transport: TransportKind
    audio_format: AudioFormat
    clock: MediaClock
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    stream_token: Optional[str] = None
    context: str = "general"
    custom_parameters: Dict[str, str] = field(default_factory=dict)
    playback: PlaybackState = field(default_factory=PlaybackState)

    @classmethod
    def for_phone(cls, session_id: Optional[str] = None, **kwargs) -> "CallSession":
        """Telephony session: μ-law 8kHz, timestamp-driven clock."""
        return cls(
            transport=TransportKind.PHONE,
            audio_format=AudioFormat.ULAW_8K,
            clock=MediaClock(timestamp_driven=True),
            id=session_id or str(uuid.uuid4()),
            **kwargs
        )

    @classmethod
    def for_browser(
        cls,
        session_id: Optional[str] = None,
        time_fn: Callable[[], float] = time.monotonic,
        **kwargs
    ) -> "CallSession":
        """Browser session: PCM16 24kHz, wall-clock driven clock."""
        return cls(
            transport=TransportKind.BROWSER,
            audio_format=AudioFormat.PCM16_24K,
            clock=MediaClock(timestamp_driven=False, time_fn=time_fn),
            id=session_id or str(uuid.uuid4()),
            **kwargs
        )

    def start_stream(self, stream_token: Optional[str] = None) -> None:
        """Handle a stream (re)start: new token, clock and playback reset."""
        if stream_token is not None:
            self.stream_token = stream_token
        self.clock.reset()
        self.playback.reset()
