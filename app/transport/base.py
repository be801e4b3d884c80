"""Downstream transport abstraction.

A transport adapter turns one downstream WebSocket (telephony media stream or
browser) into a sequence of TransportEvents, and turns assistant audio back
into that connection's wire format.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

import structlog
from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.core.session import CallSession


RawMessage = Union[str, bytes]


class DownstreamClosed(Exception):
    """The downstream connection is gone."""


class TransportEventType(Enum):
    """Normalized downstream events."""

    AUDIO_IN = auto()
    STREAM_STARTED = auto()
    STREAM_STOPPED = auto()
    BARGE_IN = auto()
    PLAYBACK_DRAINED = auto()


@dataclass
class TransportEvent:
    """Downstream event.

    AUDIO_IN carries PCM16 @ 24kHz; STREAM_STARTED carries the stream token
    and any custom parameters the caller attached.
    """

    type: TransportEventType
    audio: Optional[bytes] = None
    stream_token: Optional[str] = None
    custom_parameters: Dict[str, str] = field(default_factory=dict)


class DownstreamConnection(Protocol):
    """Minimal WebSocket surface used by adapters."""

    async def receive(self) -> RawMessage:
        """Next text or binary message.

        Raises:
            DownstreamClosed: When the peer disconnected
        """
        ...

    async def send_json(self, message: Dict[str, Any]) -> None:
        """Send a JSON text message.

        Raises:
            DownstreamClosed: When the peer disconnected
        """
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class StarletteConnection:
    """DownstreamConnection over an accepted Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def receive(self) -> RawMessage:
        try:
            message = await self._websocket.receive()
        except (WebSocketDisconnect, RuntimeError) as e:
            raise DownstreamClosed(str(e)) from e

        if message["type"] == "websocket.disconnect":
            raise DownstreamClosed(f"code={message.get('code')}")

        if message.get("bytes") is not None:
            return message["bytes"]
        return message.get("text") or ""

    async def send_json(self, message: Dict[str, Any]) -> None:
        try:
            await self._websocket.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as e:
            raise DownstreamClosed(str(e)) from e

    async def close(self, code: int = 1000) -> None:
        if self._websocket.application_state == WebSocketState.DISCONNECTED:
            return
        if self._websocket.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._websocket.close(code=code)
        except RuntimeError:
            # Close frame already sent by the other side
            pass


class TransportAdapter(ABC):
    """Base class for downstream transport adapters."""

    def __init__(self, connection: DownstreamConnection, session: CallSession) -> None:
        """Initialize adapter.

        Args:
            connection: Accepted downstream connection
            session: Call session this adapter feeds
        """
        self._connection = connection
        self.session = session
        self._pending: List[TransportEvent] = []
        self._closed = False

        self._frames_in = 0
        self._frames_out = 0

        self._logger = structlog.get_logger(__name__).bind(
            session_id=session.id,
            transport=session.transport.value
        )

    @property
    def tracks_playback(self) -> bool:
        """Whether the downstream party acknowledges played audio."""
        return False

    @property
    def has_pending_playback(self) -> bool:
        """Whether sent assistant audio may still be playing downstream."""
        return False

    async def open(self) -> None:
        """Perform the transport's opening handshake, if any."""

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Iterate over downstream events until the stream stops or closes.

        Yields:
            Normalized transport events in arrival order
        """
        while self._pending:
            yield self._pending.pop(0)

        while not self._closed:
            try:
                raw = await self._connection.receive()
            except DownstreamClosed as e:
                self._logger.info("Downstream disconnected", reason=str(e))
                return

            for event in self.handle_message(raw):
                yield event
                if event.type == TransportEventType.STREAM_STOPPED:
                    return

    def handle_message(self, raw: RawMessage) -> List[TransportEvent]:
        """Parse one downstream message.

        Malformed messages are logged and dropped.

        Args:
            raw: Text or binary WebSocket message

        Returns:
            Events produced by the message (possibly none)
        """
        try:
            return self._parse(raw)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            self._logger.warning(
                "Dropping malformed downstream message",
                error=f"{type(e).__name__}: {e}",
                size=len(raw)
            )
            return []

    @abstractmethod
    def _parse(self, raw: RawMessage) -> List[TransportEvent]:
        ...

    @abstractmethod
    async def send_audio(self, pcm16_24k: bytes) -> None:
        """Send assistant audio (PCM16 @ 24kHz) downstream."""
        ...

    @abstractmethod
    async def clear_playback(self) -> None:
        """Stop downstream playback of audio already sent."""
        ...

    @abstractmethod
    async def send_error(self, message: str) -> None:
        """Report a fatal session error downstream."""
        ...

    async def close(self, code: int = 1000) -> None:
        """Close the downstream connection."""
        if self._closed:
            return
        self._closed = True
        await self._connection.close(code)
        self._logger.info(
            "Transport closed",
            frames_in=self._frames_in,
            frames_out=self._frames_out
        )

    async def _send(self, message: Dict[str, Any]) -> bool:
        """Send a JSON message, returning False if the peer is gone."""
        if self._closed:
            return False
        try:
            await self._connection.send_json(message)
        except DownstreamClosed as e:
            self._logger.debug("Send dropped, downstream closed", reason=str(e))
            return False
        return True

    @staticmethod
    def _load_json(raw: RawMessage) -> Dict[str, Any]:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Message is not a JSON object")
        return data
