"""Tests for flow control utilities (CancelToken, ChunkStream)."""

import asyncio

import pytest

from tierconvert.exceptions import ConversionCancelledError
from tierconvert.utils.flow_control import CancelToken, ChunkStream, stream_chunks


class TestCancelToken:
    """Tests for CancelToken."""

    def test_initial_state(self):
        token = CancelToken()
        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_keeps_first_reason(self):
        """Later cancel calls do not overwrite the reason."""
        token = CancelToken()
        token.cancel("user aborted")
        token.cancel("shutdown")

        assert token.cancelled is True
        assert token.reason == "user aborted"
        with pytest.raises(ConversionCancelledError):
            token.raise_if_cancelled()

    async def test_run_returns_result(self):
        """run() passes through the awaitable's result."""
        token = CancelToken()

        async def work():
            return 42

        assert await token.run(work()) == 42

    async def test_run_cancels_inner_task(self):
        """Cancellation interrupts the awaitable and unwinds its finally blocks."""
        token = CancelToken()
        unwound = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            finally:
                unwound.set()

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("stop")

        asyncio.create_task(cancel_soon())
        with pytest.raises(ConversionCancelledError) as exc_info:
            await token.run(slow())

        assert exc_info.value.reason == "stop"
        assert unwound.is_set()

    async def test_run_refuses_when_already_cancelled(self):
        """An already-cancelled token never starts the work."""
        token = CancelToken()
        token.cancel()
        started = False

        async def work():
            nonlocal started
            started = True

        coro = work()
        with pytest.raises(ConversionCancelledError):
            await token.run(coro)
        coro.close()
        assert started is False


class TestChunkStream:
    """Tests for ChunkStream."""

    async def test_yields_all_chunks_in_order(self):
        content = bytes(range(256)) * 10
        chunks = [chunk async for chunk in ChunkStream(content, chunk_size=100)]

        assert b"".join(chunks) == content
        assert all(len(c) == 100 for c in chunks[:-1])

    async def test_producer_suspends_when_buffer_full(self):
        """A slow consumer makes the producer wait instead of buffering everything."""
        stream = stream_chunks(b"x" * 1000, chunk_size=10, max_buffered=2)

        consumed = 0
        async for _ in stream:
            consumed += 1
            await asyncio.sleep(0)

        assert consumed == 100
        assert stream.stats.consumed == 100
        assert stream.stats.produced == 100
        assert stream.stats.producer_waits > 0

    async def test_cancel_stops_consumption(self):
        """Cancelling the token raises at the consumer's next suspension point."""
        token = CancelToken()
        stream = ChunkStream("abcdefghij" * 10, chunk_size=5, max_buffered=1, cancel=token)

        received = []
        with pytest.raises(ConversionCancelledError):
            async for chunk in stream:
                received.append(chunk)
                if len(received) == 3:
                    token.cancel("enough")

        assert len(received) == 3

    def test_invalid_sizes_rejected(self):
        with pytest.raises(ValueError):
            ChunkStream(b"data", chunk_size=0)
        with pytest.raises(ValueError):
            ChunkStream(b"data", max_buffered=0)
