"""Telephony media stream adapter (Twilio-style JSON over WebSocket).

Inbound events: connected, start, media, mark, stop.
Outbound events: media, mark, clear.

Audio Flow:
- Uplink: base64 μ-law @ 8kHz -> PCM16 @ 8kHz -> upsample -> PCM16 @ 24kHz
- Downlink: PCM16 @ 24kHz -> decimate -> PCM16 @ 8kHz -> μ-law -> base64
"""

import base64
from collections import deque
from typing import Any, Deque, Dict, List

from app.core.constants import AudioConstants, TwilioConstants
from app.core.resampler import Resampler
from app.core.session import CallSession
from app.transport.base import (
    DownstreamConnection,
    RawMessage,
    TransportAdapter,
    TransportEvent,
    TransportEventType,
)
from app.utils.codec import decode_ulaw, encode_ulaw, pcm16_from_bytes, pcm16_to_bytes


class PhoneTransport(TransportAdapter):
    """Adapter for the telephony media stream protocol."""

    def __init__(
        self,
        connection: DownstreamConnection,
        session: CallSession,
        resampler_quality: str = Resampler.LINEAR
    ) -> None:
        """Initialize phone adapter.

        Args:
            connection: Accepted downstream connection
            session: Phone call session
            resampler_quality: "linear" or a soxr quality name
        """
        super().__init__(connection, session)

        self._uplink_resampler = Resampler(
            AudioConstants.TELEPHONY_RATE, AudioConstants.AI_RATE, resampler_quality
        )
        self._downlink_resampler = Resampler(
            AudioConstants.AI_RATE, AudioConstants.TELEPHONY_RATE, resampler_quality
        )

        # Marks sent after each media chunk and not yet acknowledged
        self._marks: Deque[str] = deque()

    @property
    def tracks_playback(self) -> bool:
        return True

    @property
    def has_pending_playback(self) -> bool:
        return bool(self._marks)

    @property
    def pending_marks(self) -> int:
        return len(self._marks)

    def _parse(self, raw: RawMessage) -> List[TransportEvent]:
        if isinstance(raw, (bytes, bytearray)):
            self._logger.warning("Ignoring binary frame on media stream", size=len(raw))
            return []

        data = self._load_json(raw)
        event = data.get("event")

        if event == "connected":
            self._logger.info("Media stream connected", protocol=data.get("protocol"))
            return []

        if event == "start":
            return [self._handle_start(data)]

        if event == "media":
            return self._handle_media(data)

        if event == "mark":
            if not self._marks:
                return []
            self._marks.popleft()
            if self._marks:
                return []
            return [TransportEvent(type=TransportEventType.PLAYBACK_DRAINED)]

        if event == "stop":
            self._logger.info("Media stream stopped", stream_sid=self.session.stream_token)
            return [TransportEvent(type=TransportEventType.STREAM_STOPPED)]

        self._logger.debug("Unhandled media stream event", media_event=event)
        return []

    def _handle_start(self, data: Dict[str, Any]) -> TransportEvent:
        start = data.get("start") or {}
        stream_sid = data.get("streamSid") or start.get("streamSid")
        if not stream_sid:
            raise ValueError("start event without streamSid")

        custom_parameters = {
            str(k): str(v) for k, v in (start.get("customParameters") or {}).items()
        }

        self.session.start_stream(stream_sid)
        self.session.custom_parameters.update(custom_parameters)
        self._marks.clear()
        self._uplink_resampler.reset()
        self._downlink_resampler.reset()

        self._logger.info(
            "Media stream started",
            stream_sid=stream_sid,
            call_sid=start.get("callSid"),
            custom_parameters=custom_parameters
        )

        return TransportEvent(
            type=TransportEventType.STREAM_STARTED,
            stream_token=stream_sid,
            custom_parameters=custom_parameters
        )

    def _handle_media(self, data: Dict[str, Any]) -> List[TransportEvent]:
        if not self.session.stream_token:
            self._logger.debug("Dropping media before stream start")
            return []

        media = data["media"]
        track = media.get("track")
        if track is not None and track != TwilioConstants.INBOUND_TRACK:
            return []

        timestamp = media.get("timestamp")
        if timestamp is not None:
            self.session.clock.advance(int(timestamp))

        ulaw = base64.b64decode(media["payload"], validate=True)
        pcm16_24k = self._uplink_resampler.resample_samples(decode_ulaw(ulaw))

        self._frames_in += 1
        if self._frames_in % AudioConstants.LOG_INTERVAL_STATS == 0:
            self._logger.debug(
                f"Received {self._frames_in} media frames",
                media_clock=self.session.clock.now()
            )

        return [TransportEvent(type=TransportEventType.AUDIO_IN, audio=pcm16_to_bytes(pcm16_24k))]

    async def send_audio(self, pcm16_24k: bytes) -> None:
        """Send assistant audio as a media envelope followed by a mark.

        Args:
            pcm16_24k: PCM16 audio @ 24kHz
        """
        stream_sid = self.session.stream_token
        if not stream_sid:
            self._logger.debug("Dropping outbound audio, no stream yet")
            return

        pcm16_8k = self._downlink_resampler.resample_samples(pcm16_from_bytes(pcm16_24k))
        if pcm16_8k.size == 0:
            return

        payload = base64.b64encode(encode_ulaw(pcm16_8k)).decode("ascii")
        sent = await self._send({
            "event": "media",
            "streamSid": stream_sid,
            "media": {"payload": payload},
        })
        if not sent:
            return

        self._frames_out += 1
        await self._send_mark(stream_sid)

    async def _send_mark(self, stream_sid: str) -> None:
        sent = await self._send({
            "event": "mark",
            "streamSid": stream_sid,
            "mark": {"name": TwilioConstants.MARK_NAME},
        })
        if sent:
            self._marks.append(TwilioConstants.MARK_NAME)

    async def clear_playback(self) -> None:
        """Send a clear envelope and forget pending marks."""
        self._marks.clear()
        stream_sid = self.session.stream_token
        if not stream_sid:
            return
        await self._send({"event": "clear", "streamSid": stream_sid})
        self._logger.debug("Sent clear", stream_sid=stream_sid)

    async def send_error(self, message: str) -> None:
        # The media stream protocol has no error message; the stream is closed instead
        self._logger.error("Session error", error=message, stream_sid=self.session.stream_token)
