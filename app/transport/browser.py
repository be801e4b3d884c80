"""Browser microphone adapter (application JSON protocol over WebSocket).

Inbound:
    {"type": "start"}
    {"type": "audio", "data": <base64 PCM16>}
    {"type": "input_audio_buffer.append", "audio": <base64 PCM16>}
    binary frames of raw PCM16
    {"type": "interrupt"}
    {"type": "stop"}

Outbound:
    {"type": "session", "sessionId": ...}
    {"type": "session.ready", "testMode": ...}
    {"type": "audio", "payload": <base64 PCM16 @ 24kHz>}
    {"type": "clear"}
    {"type": "error", "message": ...}
"""

import base64
from typing import List

from app.core.constants import AudioConstants
from app.core.resampler import Resampler
from app.core.session import CallSession
from app.transport.base import (
    DownstreamConnection,
    RawMessage,
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)
from app.utils.codec import pcm16_from_bytes, pcm16_to_bytes


class BrowserTransport(TransportAdapter):
    """Adapter for browser clients streaming PCM16."""

    def __init__(
        self,
        connection: DownstreamConnection,
        session: CallSession,
        capture_rate: int = AudioConstants.AI_RATE,
        test_mode: bool = False,
        resampler_quality: str = Resampler.LINEAR
    ) -> None:
        """Initialize browser adapter.

        Args:
            connection: Accepted downstream connection
            session: Browser call session
            capture_rate: Sample rate of the PCM16 the client sends
            test_mode: Whether the upstream is the mock (reported to the client)
            resampler_quality: "linear" or a soxr quality name
        """
        super().__init__(connection, session)
        self._test_mode = test_mode

        # 48kHz worklet capture is brought down to the endpoint rate
        self._capture_resampler = (
            Resampler(capture_rate, AudioConstants.AI_RATE, resampler_quality)
            if capture_rate != AudioConstants.AI_RATE
            else None
        )

    async def open(self) -> None:
        """Announce the session to the client and start the stream."""
        await self._send({"type": "session", "sessionId": self.session.id})
        await self._send({"type": "session.ready", "testMode": self._test_mode})

        self.session.start_stream()
        self._pending.append(TransportEvent(type=TransportEventType.STREAM_STARTED))
        self._logger.info("Browser session ready", test_mode=self._test_mode)

    def _parse(self, raw: RawMessage) -> List[TransportEvent]:
        if isinstance(raw, (bytes, bytearray)):
            return self._audio_event(bytes(raw))

        data = self._load_json(raw)
        message_type = data.get("type")

        if message_type == "audio":
            return self._audio_event(base64.b64decode(data["data"], validate=True))

        if message_type == "input_audio_buffer.append":
            return self._audio_event(base64.b64decode(data["audio"], validate=True))

        if message_type == "interrupt":
            self._logger.info("Client interrupt")
            return [TransportEvent(type=TransportEventType.BARGE_IN)]

        if message_type == "start":
            self._logger.info("Client ready to stream")
            return []

        if message_type == "stop":
            self._logger.info("Client stopped streaming")
            return [TransportEvent(type=TransportEventType.STREAM_STOPPED)]

        self._logger.debug("Unhandled browser message", message_type=message_type)
        return []

    def _audio_event(self, pcm16: bytes) -> List[TransportEvent]:
        samples = pcm16_from_bytes(pcm16)
        if samples.size == 0:
            return []

        if self._capture_resampler is not None:
            samples = self._capture_resampler.resample_samples(samples)

        self._frames_in += 1
        if self._frames_in % AudioConstants.LOG_INTERVAL_STATS == 0:
            self._logger.debug(f"Received {self._frames_in} browser frames")

        return [TransportEvent(type=TransportEventType.AUDIO_IN, audio=pcm16_to_bytes(samples))]

    async def send_audio(self, pcm16_24k: bytes) -> None:
        if not pcm16_24k:
            return
        sent = await self._send({
            "type": "audio",
            "payload": base64.b64encode(pcm16_24k).decode("ascii"),
        })
        if sent:
            self._frames_out += 1

    async def clear_playback(self) -> None:
        await self._send({"type": "clear"})

    async def send_error(self, message: str) -> None:
        self._logger.error("Session error", error=message)
        await self._send({"type": "error", "message": message})
