"""Command/event channel to a headless Chromium over ``--remote-debugging-pipe``.

Messages are JSON objects terminated by a NUL byte. Commands carry an ``id``
and get exactly one reply with the same ``id`` holding ``result`` or
``error``. Everything without an ``id`` is an event, delivered to the
subscriptions registered for its method name.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import os
from typing import Any, Protocol

from tierconvert.config.constants import DEFAULT_COMMAND_TIMEOUT
from tierconvert.exceptions import EngineError, EngineProtocolError, OperationTimeoutError
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)

_DELIMITER = b"\0"
# Screenshots and PDFs arrive as one message
_READ_LIMIT = 256 * 1024 * 1024


class PipeWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class Subscription:
    """Typed channel for one event name.

    Iterate it (or call :meth:`get`) to receive event ``params`` in order.
    :meth:`unsubscribe` detaches it; pending iteration then stops.

    Example usage:
        ```python
        with transport.subscribe("Page.loadEventFired", session_id=sid) as loads:
            await transport.send("Page.navigate", {...}, session_id=sid)
            await loads.get(timeout=30)
        ```
    """

    _CLOSED = object()

    def __init__(self, transport: PipeTransport, event: str, session_id: str | None) -> None:
        self.event = event
        self.session_id = session_id
        self._transport = transport
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, method: str, session_id: str | None) -> bool:
        if method != self.event:
            return False
        return self.session_id is None or self.session_id == session_id

    def _deliver(self, params: dict[str, Any]) -> None:
        if self._active:
            self._queue.put_nowait(params)

    def _close(self) -> None:
        if self._active:
            self._active = False
            self._queue.put_nowait(self._CLOSED)

    def unsubscribe(self) -> None:
        """Detach from the transport. Safe to call more than once."""
        self._transport._remove_subscription(self)
        self._close()

    async def get(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the next event's params."""
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError as e:
            raise OperationTimeoutError(f"waiting for {self.event}", timeout or 0, "engine") from e
        if item is self._CLOSED:
            raise EngineError(f"Subscription to {self.event} closed", backend="engine")
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.unsubscribe()


class PipeTransport:
    """NUL-delimited JSON command/event transport."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: PipeWriter,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.command_timeout = command_timeout

        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future[dict[str, Any]]]] = {}
        self._subscriptions: list[Subscription] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the background reader. Idempotent."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Issue a command and wait for its result."""
        if self._closed:
            raise EngineError(f"Transport closed, cannot send {method}", backend="engine")
        self.start()

        message_id = next(self._ids)
        message: dict[str, Any] = {"id": message_id, "method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = (method, future)
        self._writer.write(json.dumps(message).encode("utf-8") + _DELIMITER)

        limit = timeout if timeout is not None else self.command_timeout
        try:
            return await asyncio.wait_for(future, limit)
        except TimeoutError as e:
            raise OperationTimeoutError(method, limit, "engine") from e
        finally:
            self._pending.pop(message_id, None)

    def subscribe(self, event: str, session_id: str | None = None) -> Subscription:
        """Open a subscription for ``event`` (optionally scoped to a session)."""
        subscription = Subscription(self, event, session_id)
        if self._closed:
            subscription._close()
        else:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(subscription)

    def _dispatch(self, raw: bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Discarding malformed engine message", size=len(raw))
            return

        message_id = message.get("id")
        if message_id is not None:
            pending = self._pending.get(message_id)
            if pending is None or pending[1].done():
                return
            method, future = pending
            error = message.get("error")
            if error:
                future.set_exception(
                    EngineProtocolError(
                        method,
                        error.get("message", "unknown error"),
                        error.get("code"),
                    )
                )
            else:
                future.set_result(message.get("result", {}))
            return

        method = message.get("method")
        if not method:
            return
        session_id = message.get("sessionId")
        for subscription in list(self._subscriptions):
            if subscription.matches(method, session_id):
                subscription._deliver(message.get("params", {}))

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self._reader.readuntil(_DELIMITER)
                self._dispatch(raw[:-1])
        except asyncio.IncompleteReadError:
            log.debug("Engine pipe reached EOF")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Engine pipe read failed", error=str(e))
        finally:
            self._fail_pending("Engine pipe closed")

    def _fail_pending(self, reason: str) -> None:
        self._closed = True
        for _, future in self._pending.values():
            if not future.done():
                future.set_exception(EngineError(reason, backend="engine"))
        self._pending.clear()
        for subscription in self._subscriptions:
            subscription._close()
        self._subscriptions.clear()

    async def close(self) -> None:
        """Stop reading, fail pending commands and close the pipe. Idempotent."""
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        self._fail_pending("Transport closed")
        try:
            self._writer.close()
        except OSError as e:
            log.debug("Engine pipe close failed", error=str(e))


async def open_pipe_transport(
    read_fd: int, write_fd: int, command_timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> PipeTransport:
    """Wrap the parent's ends of the engine pipes in a started :class:`PipeTransport`."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=_READ_LIMIT)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), os.fdopen(read_fd, "rb", buffering=0)
    )
    write_transport, _ = await loop.connect_write_pipe(
        asyncio.Protocol, os.fdopen(write_fd, "wb", buffering=0)
    )
    transport = PipeTransport(reader, write_transport, command_timeout=command_timeout)
    transport.start()
    return transport
