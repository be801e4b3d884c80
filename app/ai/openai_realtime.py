"""OpenAI Realtime API adapter.

Bidirectional audio streaming with the OpenAI Realtime endpoint:

1. WebSocket connection with bearer auth and a connect timeout
2. Session configuration (audio format, turn detection, voice, instructions)
3. Audio append / commit / cancel / truncate / clear commands
4. Event translation into AiEvent for the bridge

Audio Flow:
- Input: PCM16 @ 24kHz -> base64 -> input_audio_buffer.append
- Output: response.output_audio.delta -> base64 decode -> PCM16 @ 24kHz

Both the GA event names and the older beta names are accepted.
"""

import asyncio
import base64
import binascii
import json
from typing import Any, Dict, Optional

import structlog
import websockets
from websockets.asyncio.client import ClientConnection

from app.ai.duplex_base import AiDuplexBase, AiEventType, SessionConfig
from app.core.constants import AudioConstants


class OpenAIRealtimeClient(AiDuplexBase):
    """OpenAI Realtime API client for one call."""

    WS_URL = "wss://api.openai.com/v1/realtime"

    AUDIO_DELTA_EVENTS = ("response.output_audio.delta", "response.audio.delta")
    TRANSCRIPT_DONE_EVENTS = (
        "response.output_audio_transcript.done",
        "response.audio_transcript.done",
    )

    # Expected after a clear or a late cancel, not worth tearing a call down
    BENIGN_ERROR_CODES = frozenset({
        "input_audio_buffer_commit_empty",
        "response_cancel_not_active",
    })

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-realtime",
        url: str = WS_URL,
        connect_timeout: float = 10.0
    ) -> None:
        """Initialize OpenAI Realtime client.

        Args:
            api_key: OpenAI API key
            model: Realtime model name
            url: Realtime WebSocket endpoint
            connect_timeout: Seconds to wait for the WebSocket handshake

        Raises:
            ValueError: If no API key is given
        """
        super().__init__(sample_rate=AudioConstants.AI_RATE, frame_ms=AudioConstants.FRAME_MS)

        if not api_key:
            raise ValueError("OpenAI API key not provided")

        self._api_key = api_key
        self._model = model
        self._url = url
        self._connect_timeout = connect_timeout
        self._ws: Optional[ClientConnection] = None

        self._stop_event = asyncio.Event()
        self._message_handler_task: Optional[asyncio.Task[None]] = None

        self._logger = structlog.get_logger(__name__)

    async def connect(self) -> None:
        """Connect to the Realtime API.

        Raises:
            ConnectionError: If the handshake fails or times out
        """
        if self._connected:
            return

        try:
            async with asyncio.timeout(self._connect_timeout):
                self._ws = await websockets.connect(
                    f"{self._url}?model={self._model}",
                    additional_headers={"Authorization": f"Bearer {self._api_key}"},
                    open_timeout=self._connect_timeout,
                    max_size=None
                )
        except Exception as e:
            raise ConnectionError(f"Failed to connect to OpenAI Realtime: {e}") from e

        self._connected = True
        self._stop_event.clear()

        self._message_handler_task = asyncio.create_task(
            self._message_handler(),
            name="openai-message-handler"
        )

        self._emit(AiEventType.CONNECTED)
        self._logger.info("OpenAI Realtime connected", model=self._model)

    async def close(self) -> None:
        """Close connection."""
        if not self._connected:
            self._close_events()
            return

        self._connected = False
        self._stop_event.set()

        try:
            if self._message_handler_task:
                self._message_handler_task.cancel()
                try:
                    await self._message_handler_task
                except asyncio.CancelledError:
                    self._logger.debug("Message handler task cancelled")
                except Exception as e:
                    self._logger.error("Message handler task failed", error=str(e), exc_info=e)
        finally:
            if self._ws:
                await self._ws.close()

        self._close_events()
        self._logger.info("OpenAI Realtime disconnected", **self.get_stats())

    async def initialize(self, session_config: SessionConfig) -> None:
        """Send the session.update configuring this call."""
        message = self.build_session_update(session_config, self._model)

        self._logger.info(
            "Sending session.update",
            voice=session_config.voice,
            turn_detection=message["session"]["audio"]["input"]["turn_detection"],
            instructions_length=len(session_config.instructions)
        )

        await self._send(message)

    @staticmethod
    def build_session_update(session_config: SessionConfig, model: Optional[str] = None) -> Dict[str, Any]:
        """Build the session.update message for a session configuration."""
        audio_format: Dict[str, Any] = {"type": session_config.encoding}
        if session_config.encoding == "audio/pcm":
            audio_format["rate"] = session_config.sample_rate

        turn_detection = (
            session_config.turn_detection.to_dict()
            if session_config.turn_detection is not None
            else None
        )

        session: Dict[str, Any] = {
            "type": "realtime",
            "output_modalities": ["audio"],
            "instructions": session_config.instructions,
            "audio": {
                "input": {
                    "format": audio_format,
                    "turn_detection": turn_detection,
                },
                "output": {
                    "format": dict(audio_format),
                    "voice": session_config.voice,
                },
            },
        }
        if session_config.model or model:
            session["model"] = session_config.model or model

        return {"type": "session.update", "session": session}

    async def send_audio(self, pcm16_24k: bytes) -> None:
        """Append PCM16 @ 24kHz audio to the endpoint's input buffer.

        Args:
            pcm16_24k: PCM16 audio at the endpoint's native rate
        """
        if not self._connected or not pcm16_24k:
            return

        await self._send({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(pcm16_24k).decode("ascii"),
        })

        self._audio_frames_sent += 1
        if self._audio_frames_sent % AudioConstants.LOG_INTERVAL_FRAMES == 0:
            self._logger.debug(f"Sent {self._audio_frames_sent} audio frames to OpenAI")

    async def commit(self) -> None:
        """Commit buffered audio and ask for a response."""
        self._logger.debug("Committing audio buffer")
        await self._send({"type": "input_audio_buffer.commit"})
        await self._send({
            "type": "response.create",
            "response": {"output_modalities": ["audio"]},
        })

    async def cancel_response(self) -> None:
        await self._send({"type": "response.cancel"})

    async def truncate(self, item_id: str, audio_end_ms: int) -> None:
        await self._send({
            "type": "conversation.item.truncate",
            "item_id": item_id,
            "content_index": 0,
            "audio_end_ms": audio_end_ms,
        })

    async def clear_input_buffer(self) -> None:
        await self._send({"type": "input_audio_buffer.clear"})

    async def send_greeting(self, text: str) -> None:
        """Seed the conversation so the assistant speaks first."""
        await self._send({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{
                    "type": "input_text",
                    "text": f"[System: Greet the caller with this message: {text}]",
                }],
            },
        })
        await self._send({
            "type": "response.create",
            "response": {"output_modalities": ["audio"]},
        })
        self._logger.info("Greeting request sent", greeting_preview=text[:50])

    async def _send(self, message: Dict[str, Any]) -> None:
        """Send a JSON message, dropping it if the socket is gone."""
        if not self._connected or not self._ws:
            return

        try:
            await self._ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed:
            self._logger.warning("Send on closed connection dropped", type=message.get("type"))

    async def _message_handler(self) -> None:
        """Handle WebSocket messages from OpenAI."""
        if not self._ws:
            return

        while not self._stop_event.is_set():
            try:
                message = await self._ws.recv()
                data = json.loads(message)
                if not isinstance(data, dict):
                    self._logger.error("Ignoring non-object message", message_type=type(data).__name__)
                    continue

                self.process_message(data)

            except websockets.exceptions.ConnectionClosed as e:
                self._logger.warning("WebSocket connection closed", code=e.rcvd.code if e.rcvd else None)
                self._emit(AiEventType.DISCONNECTED, error="Upstream connection closed")
                break
            except json.JSONDecodeError as e:
                self._logger.error("Failed to decode message", error=str(e))
            except Exception as e:
                self._logger.error(
                    "Failed to process message",
                    error=f"{type(e).__name__}: {e}",
                    exc_info=True
                )

    def process_message(self, data: Dict[str, Any]) -> None:
        """Translate one endpoint message into bridge events.

        Args:
            data: Parsed JSON message
        """
        event_type = data.get("type", "")

        if event_type in self.AUDIO_DELTA_EVENTS:
            delta = data.get("delta")
            if not delta:
                return
            try:
                audio = base64.b64decode(delta, validate=True)
            except (binascii.Error, ValueError) as e:
                self._logger.error("Dropping undecodable audio delta", error=str(e))
                return

            self._audio_chunks_received += 1
            if self._audio_chunks_received % AudioConstants.LOG_INTERVAL_FRAMES == 0:
                self._logger.debug(f"Received {self._audio_chunks_received} audio chunks from OpenAI")

            self._emit(AiEventType.AUDIO_DELTA, audio=audio, item_id=data.get("item_id"))
            return

        if event_type == "input_audio_buffer.speech_started":
            self._emit(AiEventType.SPEECH_STARTED, data={"audio_start_ms": data.get("audio_start_ms")})
            return

        if event_type == "input_audio_buffer.speech_stopped":
            self._emit(AiEventType.SPEECH_STOPPED, data={"audio_end_ms": data.get("audio_end_ms")})
            return

        if event_type == "response.created":
            response = data.get("response") or {}
            self._logger.debug("AI response started", response_id=response.get("id"))
            self._emit(AiEventType.RESPONSE_STARTED, data={"response_id": response.get("id")})
            return

        if event_type == "response.done":
            response = data.get("response") or {}
            self._logger.info(
                "Response completed",
                status=response.get("status"),
                usage=response.get("usage")
            )
            self._emit(
                AiEventType.RESPONSE_DONE,
                data={"response_id": response.get("id"), "status": response.get("status")}
            )
            return

        if event_type in self.TRANSCRIPT_DONE_EVENTS:
            transcript = data.get("transcript") or ""
            self._logger.info(f"AI: {transcript}")
            self._emit(AiEventType.TRANSCRIPT_DONE, text=transcript)
            return

        if event_type == "session.updated":
            self._logger.info("OpenAI session configured")
            self._emit(AiEventType.SESSION_UPDATED, data=data.get("session"))
            return

        if event_type == "error":
            error = data.get("error") or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            code = error.get("code")
            if code in self.BENIGN_ERROR_CODES:
                self._logger.debug("Ignoring benign upstream error", code=code)
                return
            self._logger.error("OpenAI API error", code=code, message=error.get("message"))
            self._emit(
                AiEventType.ERROR,
                error=error.get("message") or code or "Unknown upstream error",
                data=error
            )
            return

        self._logger.debug("OpenAI event", type=event_type)
