"""Flow control utilities for cancellation and backpressure.

This module provides:
- CancelToken: cooperative cancellation signal checked at suspension points
- ChunkStream: pull-based chunk producer that suspends while the consumer's
  buffer is full
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass
from typing import TypeVar

from tierconvert.config.constants import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_BUFFERED_CHUNKS
from tierconvert.exceptions import ConversionCancelledError
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# CancelToken - cooperative cancellation
# =============================================================================


class CancelToken:
    """Cooperative cancellation signal shared between a caller and a conversion.

    Example usage:
        ```python
        token = CancelToken()
        task = asyncio.create_task(orchestrator.convert(doc, "pdf", cancel=token))
        ...
        token.cancel("user aborted")
        ```
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Later calls keep the first reason."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`ConversionCancelledError` if cancellation was signalled."""
        if self._event.is_set():
            raise ConversionCancelledError(self.reason)

    async def wait(self) -> None:
        """Wait until cancellation is signalled."""
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation arrives first.

        On cancellation the inner task is cancelled (which unwinds any
        ``finally`` blocks it holds, such as pool leases or open requests)
        and :class:`ConversionCancelledError` is raised.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        finished = False
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finished = task in done
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    log.debug("Cancelled task raised during unwind", error=str(e))
        if finished:
            return task.result()
        raise ConversionCancelledError(self.reason)


# =============================================================================
# ChunkStream - pull-based backpressure
# =============================================================================


@dataclass
class StreamStats:
    """Statistics for a chunk stream.

    Attributes:
        max_buffered: Buffer capacity in chunks
        produced: Chunks handed to the buffer
        consumed: Chunks taken by the consumer
        producer_waits: Times the producer found the buffer full and suspended
    """

    max_buffered: int
    produced: int = 0
    consumed: int = 0
    producer_waits: int = 0


_END = object()


class ChunkStream:
    """Pull-based chunk stream over a finished artifact.

    A producer task slices ``content`` into ``chunk_size`` pieces and places
    them in a bounded buffer. When the buffer holds ``max_buffered`` chunks the
    producer suspends until the consumer drains one. A :class:`CancelToken`
    stops production at the next suspension point.

    Example usage:
        ```python
        async for chunk in ChunkStream(result.raw_bytes(), chunk_size=65536):
            await sink.write(chunk)
        ```
    """

    def __init__(
        self,
        content: bytes | str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_buffered: int = DEFAULT_MAX_BUFFERED_CHUNKS,
        cancel: CancelToken | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if max_buffered <= 0:
            raise ValueError("max_buffered must be positive")
        self._content = content
        self._chunk_size = chunk_size
        self._cancel = cancel
        self._buffer: asyncio.Queue[object] = asyncio.Queue(maxsize=max_buffered)
        self._stats = StreamStats(max_buffered=max_buffered)

    @property
    def stats(self) -> StreamStats:
        return self._stats

    async def _produce(self) -> None:
        for offset in range(0, len(self._content), self._chunk_size):
            if self._cancel is not None and self._cancel.cancelled:
                log.debug("Chunk production cancelled", produced=self._stats.produced)
                return
            chunk = self._content[offset : offset + self._chunk_size]
            if self._buffer.full():
                self._stats.producer_waits += 1
            await self._buffer.put(chunk)
            self._stats.produced += 1
        await self._buffer.put(_END)

    async def __aiter__(self) -> AsyncIterator[bytes | str]:
        producer = asyncio.create_task(self._produce())
        try:
            while True:
                if self._cancel is not None:
                    self._cancel.raise_if_cancelled()
                    getter = asyncio.ensure_future(self._buffer.get())
                    waiter = asyncio.ensure_future(self._cancel.wait())
                    try:
                        await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
                    finally:
                        waiter.cancel()
                    if not getter.done():
                        getter.cancel()
                        self._cancel.raise_if_cancelled()
                    item = getter.result()
                else:
                    item = await self._buffer.get()

                if item is _END:
                    return
                self._stats.consumed += 1
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer


def stream_chunks(
    content: bytes | str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_buffered: int = DEFAULT_MAX_BUFFERED_CHUNKS,
    cancel: CancelToken | None = None,
) -> ChunkStream:
    """Create a :class:`ChunkStream` over ``content``."""
    return ChunkStream(content, chunk_size=chunk_size, max_buffered=max_buffered, cancel=cancel)
