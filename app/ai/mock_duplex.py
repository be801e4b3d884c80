"""Mock realtime client for test mode and unit tests."""

import itertools
from typing import Any, List, Optional, Tuple

import numpy as np
import structlog

from app.ai.duplex_base import AiDuplexBase, AiEventType, SessionConfig
from app.core.constants import AudioConstants


def generate_tone(
    frequency: float = AudioConstants.MOCK_TONE_HZ,
    duration_s: float = AudioConstants.MOCK_TONE_SECONDS,
    amplitude: int = AudioConstants.MOCK_TONE_AMPLITUDE,
    sample_rate: int = AudioConstants.AI_RATE
) -> np.ndarray:
    """Generate a PCM16 sine tone.

    Args:
        frequency: Tone frequency in Hz
        duration_s: Duration in seconds
        amplitude: Peak amplitude
        sample_rate: Sample rate in Hz

    Returns:
        int16 samples
    """
    num_samples = int(sample_rate * duration_s)
    t = np.arange(num_samples) / sample_rate
    return np.round(amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.int16)


class MockRealtimeClient(AiDuplexBase):
    """In-process stand-in for the realtime endpoint.

    Every `response_after_frames` audio frames it plays a short tone as a
    complete assistant response. Events are queued synchronously from the
    command that caused them, so the sequence is deterministic.
    """

    TRANSCRIPT = "This is a test response."

    def __init__(
        self,
        response_after_frames: int = 50,
        frame_ms: int = AudioConstants.FRAME_MS
    ) -> None:
        """Initialize mock client.

        Args:
            response_after_frames: Frames received before each mock response
            frame_ms: Duration of each emitted audio chunk
        """
        super().__init__(sample_rate=AudioConstants.AI_RATE, frame_ms=frame_ms)
        if response_after_frames < 1:
            raise ValueError("response_after_frames must be at least 1")

        self._response_after_frames = response_after_frames
        self._item_ids = itertools.count(1)
        self.session_config: Optional[SessionConfig] = None

        # (command, *args) in the order they were issued
        self.commands: List[Tuple[Any, ...]] = []

        self._logger = structlog.get_logger(__name__)

    @property
    def responses_sent(self) -> int:
        return sum(1 for command in self.commands if command[0] == "mock_response")

    async def connect(self) -> None:
        """Connect to mock service."""
        if self._connected:
            return

        self._connected = True
        self._emit(AiEventType.CONNECTED)
        self._logger.info("Mock AI client connected")

    async def close(self) -> None:
        """Close mock connection."""
        if self._connected:
            self._connected = False
            self._logger.info("Mock AI client disconnected", **self.get_stats())
        self._close_events()

    async def initialize(self, session_config: SessionConfig) -> None:
        self.session_config = session_config
        self.commands.append(("initialize", session_config))
        self._emit(AiEventType.SESSION_UPDATED, data={"voice": session_config.voice})

    async def send_audio(self, pcm16_24k: bytes) -> None:
        """Count a received frame, answering with a tone every N frames.

        Args:
            pcm16_24k: PCM16 audio frame @ 24kHz
        """
        if not self._connected:
            return

        self._audio_frames_sent += 1
        if self._audio_frames_sent % self._response_after_frames == 0:
            self._emit_response()

    async def commit(self) -> None:
        self.commands.append(("commit",))

    async def cancel_response(self) -> None:
        self.commands.append(("cancel_response",))

    async def truncate(self, item_id: str, audio_end_ms: int) -> None:
        self.commands.append(("truncate", item_id, audio_end_ms))

    async def clear_input_buffer(self) -> None:
        self.commands.append(("clear_input_buffer",))

    async def send_greeting(self, text: str) -> None:
        self.commands.append(("send_greeting", text))

    def _emit_response(self) -> None:
        item_id = f"mock_item_{next(self._item_ids)}"
        tone = generate_tone()
        chunk_samples = self._sample_rate * self._frame_ms // 1000

        self.commands.append(("mock_response", item_id))
        self._logger.debug(
            "Mock response",
            item_id=item_id,
            frames_received=self._audio_frames_sent
        )

        self._emit(AiEventType.RESPONSE_STARTED, data={"response_id": f"resp_{item_id}"})
        for start in range(0, len(tone), chunk_samples):
            self._audio_chunks_received += 1
            self._emit(
                AiEventType.AUDIO_DELTA,
                audio=tone[start:start + chunk_samples].tobytes(),
                item_id=item_id
            )
        self._emit(AiEventType.TRANSCRIPT_DONE, text=self.TRANSCRIPT)
        self._emit(AiEventType.RESPONSE_DONE, data={"response_id": f"resp_{item_id}", "status": "completed"})
