"""Closable asyncio channel used between bridge components."""

import asyncio
from typing import AsyncIterator, Generic, TypeVar


T = TypeVar("T")

_CLOSED = object()


class StreamClosed(Exception):
    """Raised when receiving from a closed stream buffer."""


class StreamBuffer(Generic[T]):
    """Asyncio Queue-based buffer for async communication.

    Single producer, single consumer; items come out in the order they were
    sent. Closing wakes a waiting receiver, which then sees StreamClosed.
    """

    def __init__(self, capacity: int = 0) -> None:
        """Initialize stream buffer.

        Args:
            capacity: Maximum number of items to buffer (0 = unbounded)
        """
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=capacity)
        self._capacity = capacity
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    def qsize(self) -> int:
        """Number of buffered items."""
        return self._queue.qsize()

    def send_nowait(self, item: T) -> None:
        """Send item without waiting.

        Args:
            item: Data to send

        Raises:
            asyncio.QueueFull: If buffer is full
        """
        if self._closed:
            return
        self._queue.put_nowait(item)

    async def send(self, item: T) -> None:
        """Send item, waiting if necessary.

        Args:
            item: Data to send
        """
        if self._closed:
            return
        await self._queue.put(item)

    async def receive(self) -> T:
        """Receive item, waiting if necessary.

        Returns:
            Received data

        Raises:
            StreamClosed: If the buffer was closed
        """
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later receive
            self._queue.put_nowait(_CLOSED)
            raise StreamClosed()
        return item  # type: ignore[return-value]

    def receive_nowait(self) -> T:
        """Receive item without waiting.

        Returns:
            Received data

        Raises:
            asyncio.QueueEmpty: If buffer is empty
            StreamClosed: If the buffer was closed
        """
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StreamClosed()
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            try:
                yield await self.receive()
            except StreamClosed:
                return

    def close(self) -> None:
        """Close the buffer, discarding anything not yet received."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(_CLOSED)
