"""In-memory stand-ins for network connections used across tests."""

import asyncio
import base64
import json
from typing import Any, Dict, List, Optional

from app.transport.base import DownstreamClosed, RawMessage


_DISCONNECT = object()


class FakeConnection:
    """DownstreamConnection backed by a queue.

    Messages fed with feed() are returned by receive() in order; after
    disconnect() (or close()) receive() raises DownstreamClosed.
    """

    def __init__(self, incoming: Optional[List[RawMessage]] = None) -> None:
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code: Optional[int] = None

        for message in incoming or []:
            self.feed(message)

    def feed(self, message: RawMessage) -> None:
        self._incoming.put_nowait(message)

    def feed_json(self, message: Dict[str, Any]) -> None:
        self.feed(json.dumps(message))

    def disconnect(self) -> None:
        self._incoming.put_nowait(_DISCONNECT)

    async def receive(self) -> RawMessage:
        item = await self._incoming.get()
        if item is _DISCONNECT:
            self._incoming.put_nowait(_DISCONNECT)
            raise DownstreamClosed("test disconnect")
        return item

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise DownstreamClosed("closed")
        self.sent.append(message)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code
        self.disconnect()

    def sent_with(self, key: str, value: str) -> List[Dict[str, Any]]:
        """Sent messages whose `key` field equals `value`."""
        return [message for message in self.sent if message.get(key) == value]


class FakeWebSocket:
    """Stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        # Never yields a message; cancelled on close
        await asyncio.Event().wait()
        return ""

    async def close(self) -> None:
        self.closed = True

    def types(self) -> List[str]:
        return [message["type"] for message in self.sent]


class FakeClock:
    """Manually advanced clock in seconds."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def media_message(payload: bytes, timestamp: int, track: str = "inbound") -> Dict[str, Any]:
    """Telephony media event carrying μ-law payload."""
    return {
        "event": "media",
        "streamSid": "ST1",
        "media": {
            "track": track,
            "chunk": "1",
            "timestamp": str(timestamp),
            "payload": base64.b64encode(payload).decode("ascii"),
        },
    }


def start_message(stream_sid: str = "ST1", **custom_parameters: str) -> Dict[str, Any]:
    """Telephony start event."""
    return {
        "event": "start",
        "sequenceNumber": "1",
        "start": {
            "streamSid": stream_sid,
            "callSid": "CA123",
            "tracks": ["inbound"],
            "customParameters": custom_parameters,
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
        },
        "streamSid": stream_sid,
    }
