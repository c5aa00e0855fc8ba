"""Bounded pool of reusable rendering-engine processes.

The pool owns every :class:`ProcessHandle`. A backend borrows one for a single
conversion through :meth:`ProcessPool.lease` and never keeps it afterwards.
Capacity checks and handle bookkeeping happen under one lock, so concurrent
``acquire()`` calls can never push the pool past ``max_instances``.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from tierconvert.config.constants import (
    DEFAULT_POOL_IDLE_TIMEOUT,
    DEFAULT_POOL_MAX_INSTANCES,
    DEFAULT_POOL_SWEEP_INTERVAL,
)
from tierconvert.engine.launcher import EngineProcess, is_process_alive
from tierconvert.engine.transport import PipeTransport
from tierconvert.exceptions import (
    EngineError,
    LaunchFailedError,
    OperationTimeoutError,
    PoolExhaustedError,
)
from tierconvert.utils.logging import get_logger
from tierconvert.utils.memory import MemoryPressureMonitor

log = get_logger(__name__)


class Launcher(Protocol):
    async def launch(self) -> EngineProcess: ...

    async def terminate(self, engine: EngineProcess) -> None: ...


@dataclass
class ProcessHandle:
    """One pooled engine process."""

    id: str
    engine: EngineProcess
    launch_time: float
    last_used: float
    active: bool = True
    in_use: bool = False
    use_count: int = 0

    @property
    def pid(self) -> int:
        return self.engine.pid

    @property
    def endpoint(self) -> str:
        return self.engine.endpoint

    @property
    def transport(self) -> PipeTransport | None:
        return self.engine.transport

    def idle_for(self, now: float) -> float:
        return now - self.last_used


class ProcessPool:
    """Manages a bounded set of engine processes.

    Features:
    - Hard cap of ``max_instances`` live handles, enforced under a lock
    - Reuse of idle handles when ``reuse_instances`` is set
    - Background sweep evicting idle-expired and dead processes
    - One evict-and-retry when a launch fails
    - Eviction of idle handles before launching under memory pressure
    """

    def __init__(
        self,
        launcher: Launcher,
        max_instances: int = DEFAULT_POOL_MAX_INSTANCES,
        idle_timeout: float = DEFAULT_POOL_IDLE_TIMEOUT,
        reuse_instances: bool = True,
        sweep_interval: float = DEFAULT_POOL_SWEEP_INTERVAL,
        memory_monitor: MemoryPressureMonitor | None = None,
        is_alive: Callable[[int], bool] = is_process_alive,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pool.

        Args:
            launcher: Starts and stops engine processes
            max_instances: Maximum simultaneously alive handles
            idle_timeout: Seconds a released handle may sit idle before the sweep evicts it
            reuse_instances: Hand out idle handles instead of launching new ones
            sweep_interval: Seconds between background sweeps
            memory_monitor: Optional pressure signal; idle handles are evicted before launches
            is_alive: Liveness probe for a pid
            clock: Monotonic time source
        """
        if max_instances < 1:
            raise ValueError("max_instances must be >= 1")
        self.launcher = launcher
        self.max_instances = max_instances
        self.idle_timeout = idle_timeout
        self.reuse_instances = reuse_instances
        self.sweep_interval = sweep_interval
        self._memory_monitor = memory_monitor
        self._is_alive = is_alive
        self._clock = clock

        self._handles: dict[str, ProcessHandle] = {}
        self._launching = 0
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._sweep_task: asyncio.Task[None] | None = None
        self._closed = False

        self._launches = 0
        self._launch_failures = 0
        self._evictions = 0
        self._reuses = 0

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start the background idle sweep. Idempotent."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                log.warning("Engine pool sweep failed", error=str(e))

    async def cleanup(self) -> None:
        """Terminate every process and stop the sweep. Safe to call repeatedly."""
        self._closed = True
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()

        for handle in handles:
            await self._destroy(handle, reason="cleanup")
        if handles:
            log.debug("Engine pool cleaned up", terminated=len(handles))

    async def __aenter__(self) -> ProcessPool:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cleanup()

    # -- acquire / release -------------------------------------------------

    async def acquire(self) -> ProcessHandle:
        """Borrow a handle, launching a process if capacity allows.

        Raises:
            PoolExhaustedError: every slot is busy after an idle sweep
            LaunchFailedError: the engine failed to start twice
        """
        if self._closed:
            raise EngineError("Process pool is closed", backend="engine")
        self.start()

        async with self._lock:
            handle = self._take_reusable()
            if handle is not None:
                return handle

            if self._memory_monitor is not None and self._memory_monitor.under_pressure():
                await self._evict_locked(lambda h: True, reason="memory_pressure")

            if not self._has_capacity():
                await self._sweep_locked()
                handle = self._take_reusable()
                if handle is not None:
                    return handle
                if not self._has_capacity():
                    log.warning(
                        "Engine pool exhausted",
                        max_instances=self.max_instances,
                        in_use=self._in_use_count(),
                    )
                    raise PoolExhaustedError(self.max_instances)

            # Reserve the slot; the launch itself runs outside the lock
            self._launching += 1

        try:
            engine = await self._launch_with_retry()
        except BaseException:
            async with self._lock:
                self._launching -= 1
            raise

        now = self._clock()
        handle = ProcessHandle(
            id=f"engine-{next(self._ids)}",
            engine=engine,
            launch_time=now,
            last_used=now,
            in_use=True,
            use_count=1,
        )
        async with self._lock:
            self._launching -= 1
            if self._closed:
                closed = True
            else:
                closed = False
                self._handles[handle.id] = handle
        if closed:
            await self._destroy(handle, reason="pool_closed")
            raise EngineError("Process pool is closed", backend="engine")

        log.debug("Engine handle launched", handle_id=handle.id, pid=handle.pid)
        return handle

    async def launch(self) -> EngineProcess:
        """Spawn one engine process through the launcher.

        Does not register a handle; :meth:`acquire` does that after reserving
        capacity.
        """
        try:
            engine = await self.launcher.launch()
        except LaunchFailedError:
            self._launch_failures += 1
            raise
        self._launches += 1
        return engine

    async def _launch_with_retry(self) -> EngineProcess:
        try:
            return await self.launch()
        except LaunchFailedError as first:
            log.warning("Engine launch failed, evicting and retrying once", error=str(first))
            async with self._lock:
                await self._sweep_locked()
            return await self.launch()

    def _take_reusable(self) -> ProcessHandle | None:
        if not self.reuse_instances:
            return None
        for handle in self._handles.values():
            if handle.in_use or not handle.active:
                continue
            if not self._is_alive(handle.pid):
                handle.active = False
                continue
            # Idle-expired handles are still reused until the sweep evicts them
            handle.in_use = True
            handle.use_count += 1
            handle.last_used = self._clock()
            self._reuses += 1
            log.debug("Reusing engine handle", handle_id=handle.id, uses=handle.use_count)
            return handle
        return None

    def _has_capacity(self) -> bool:
        return len(self._handles) + self._launching < self.max_instances

    def _in_use_count(self) -> int:
        return sum(1 for h in self._handles.values() if h.in_use)

    async def release(self, handle: ProcessHandle, healthy: bool = True) -> None:
        """Return a handle to the pool.

        Healthy handles stay alive for reuse. Unhealthy handles, and every
        handle when reuse is disabled, are terminated.
        """
        async with self._lock:
            tracked = self._handles.get(handle.id)
            if tracked is not handle:
                log.warning("Release of unknown engine handle", handle_id=handle.id)
                return
            handle.in_use = False
            handle.last_used = self._clock()
            if not healthy:
                handle.active = False
            discard = not handle.active or not self.reuse_instances or self._closed
            if discard:
                del self._handles[handle.id]

        if discard:
            await self._destroy(handle, reason="released" if healthy else "unhealthy")

    @asynccontextmanager
    async def lease(self) -> AsyncGenerator[ProcessHandle, None]:
        """Borrow a handle for one conversion.

        The handle is always returned, including on error or cancellation.
        A handle whose transport timed out or closed is terminated instead of
        being reused.

        Example:
            async with pool.lease() as handle:
                await handle.transport.send("Page.printToPDF", {...})
        """
        handle = await self.acquire()
        healthy = True
        try:
            yield handle
        except (OperationTimeoutError, asyncio.CancelledError):
            healthy = False
            raise
        except Exception:
            transport = handle.transport
            healthy = transport is not None and not transport.closed
            raise
        finally:
            await asyncio.shield(self.release(handle, healthy=healthy))

    # -- eviction ----------------------------------------------------------

    async def sweep(self) -> int:
        """Evict idle-expired and dead handles. Returns the number evicted."""
        async with self._lock:
            return await self._sweep_locked()

    async def _sweep_locked(self) -> int:
        now = self._clock()

        def expired(handle: ProcessHandle) -> bool:
            if not handle.active or not self._is_alive(handle.pid):
                return True
            return handle.idle_for(now) > self.idle_timeout

        return await self._evict_locked(expired, reason="sweep")

    async def _evict_locked(self, predicate: Callable[[ProcessHandle], bool], reason: str) -> int:
        victims = [h for h in self._handles.values() if not h.in_use and predicate(h)]
        for handle in victims:
            del self._handles[handle.id]
        for handle in victims:
            await self._destroy(handle, reason=reason)
        if victims:
            self._evictions += len(victims)
            log.debug("Evicted engine handles", count=len(victims), reason=reason)
        return len(victims)

    async def _destroy(self, handle: ProcessHandle, reason: str) -> None:
        handle.active = False
        handle.in_use = False
        try:
            await self.launcher.terminate(handle.engine)
        except Exception as e:
            log.warning("Failed to terminate engine", handle_id=handle.id, error=str(e))
        log.debug("Engine handle destroyed", handle_id=handle.id, pid=handle.pid, reason=reason)

    # -- introspection -----------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._handles)

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        in_use = self._in_use_count()
        return {
            "max_instances": self.max_instances,
            "total": len(self._handles),
            "in_use": in_use,
            "idle": len(self._handles) - in_use,
            "launching": self._launching,
            "launches": self._launches,
            "launch_failures": self._launch_failures,
            "reuses": self._reuses,
            "evictions": self._evictions,
            "handles": [
                {
                    "id": h.id,
                    "pid": h.pid,
                    "endpoint": h.endpoint,
                    "in_use": h.in_use,
                    "use_count": h.use_count,
                }
                for h in self._handles.values()
            ],
        }
