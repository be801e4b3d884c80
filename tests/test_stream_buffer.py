"""Tests for the stream buffer channel."""

import asyncio

import pytest

from app.core.stream_buffer import StreamBuffer, StreamClosed


class TestStreamBuffer:
    """Test stream buffer functionality."""

    @pytest.mark.asyncio
    async def test_preserves_order(self) -> None:
        """Test items come out in the order they were sent."""
        buffer: StreamBuffer[int] = StreamBuffer()
        for i in range(5):
            await buffer.send(i)

        assert buffer.qsize() == 5
        assert [await buffer.receive() for _ in range(5)] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_receiver(self) -> None:
        """Test a pending receive sees StreamClosed after close."""
        buffer: StreamBuffer[bytes] = StreamBuffer()

        receiver = asyncio.create_task(buffer.receive())
        await asyncio.sleep(0)
        buffer.close()

        with pytest.raises(StreamClosed):
            await receiver

        # Later receives keep failing
        with pytest.raises(StreamClosed):
            await buffer.receive()

    @pytest.mark.asyncio
    async def test_iteration_ends_on_close(self) -> None:
        """Test async iteration stops at close."""
        buffer: StreamBuffer[str] = StreamBuffer()
        buffer.send_nowait("a")
        buffer.send_nowait("b")

        received = []

        async def consume() -> None:
            async for item in buffer:
                received.append(item)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        buffer.close()
        await asyncio.wait_for(consumer, timeout=1.0)

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_close_discards_pending_and_ignores_sends(self) -> None:
        """Test closing drops buffered items and later sends."""
        buffer: StreamBuffer[int] = StreamBuffer()
        buffer.send_nowait(1)
        buffer.close()
        buffer.send_nowait(2)
        await buffer.send(3)

        assert buffer.closed
        with pytest.raises(StreamClosed):
            buffer.receive_nowait()

    @pytest.mark.asyncio
    async def test_capacity(self) -> None:
        """Test bounded buffer rejects sends when full."""
        buffer: StreamBuffer[int] = StreamBuffer(capacity=1)
        buffer.send_nowait(1)

        with pytest.raises(asyncio.QueueFull):
            buffer.send_nowait(2)

    @pytest.mark.asyncio
    async def test_receive_nowait_empty(self) -> None:
        buffer: StreamBuffer[int] = StreamBuffer()
        with pytest.raises(asyncio.QueueEmpty):
            buffer.receive_nowait()
