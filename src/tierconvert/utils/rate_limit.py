"""Per-service rate limiting.

Two limits are enforced for every remote service:

- ``max_concurrent``: when this many requests are in flight, further requests
  are rejected immediately with :class:`RateLimitError`. Callers see the
  rejection; nothing is queued.
- ``requests_per_minute``: consecutive requests are spaced at least
  ``60 / requests_per_minute`` seconds apart. Callers sleep until their slot.

Example usage:
    ```python
    limiter = ServiceRateLimiter("html-pdf-service", requests_per_minute=30)

    async with limiter:
        response = await client.post(...)
    ```
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from tierconvert.exceptions import RateLimitError
from tierconvert.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class RateLimitStats:
    """Statistics for a service rate limiter.

    Attributes:
        in_flight: Requests currently holding a slot
        total_admitted: Requests that passed the gate
        total_rejected: Requests rejected for concurrency
        total_delayed: Requests that had to wait for their interval slot
        total_wait_time: Seconds spent waiting for interval slots
    """

    in_flight: int = 0
    total_admitted: int = 0
    total_rejected: int = 0
    total_delayed: int = 0
    total_wait_time: float = 0.0


class ServiceRateLimiter:
    """Concurrency gate plus minimum request spacing for one service."""

    def __init__(
        self,
        service_id: str,
        requests_per_minute: int | None = None,
        max_concurrent: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.service_id = service_id
        self.requests_per_minute = requests_per_minute
        self.max_concurrent = max_concurrent
        self._clock = clock
        self._sleep = sleep

        self._next_slot: float = 0.0
        self._lock = asyncio.Lock()
        self._stats = RateLimitStats()

    @property
    def min_interval(self) -> float:
        """Minimum seconds between consecutive requests."""
        if not self.requests_per_minute:
            return 0.0
        return 60.0 / self.requests_per_minute

    @property
    def in_flight(self) -> int:
        return self._stats.in_flight

    async def acquire(self) -> None:
        """Admit one request or raise :class:`RateLimitError`."""
        if self.max_concurrent is not None and self._stats.in_flight >= self.max_concurrent:
            self._stats.total_rejected += 1
            log.warning(
                "Service concurrency limit reached",
                service_id=self.service_id,
                max_concurrent=self.max_concurrent,
            )
            raise RateLimitError(self.service_id, retry_after=self.min_interval or None)

        # Reserve the slot before sleeping so concurrent callers queue behind it
        self._stats.in_flight += 1
        try:
            await self.wait_for_slot()
        except BaseException:
            self._stats.in_flight -= 1
            raise

        self._stats.total_admitted += 1

    async def wait_for_slot(self) -> None:
        """Sleep until the next request may be sent under ``requests_per_minute``.

        ``acquire`` calls this for the first request; callers that retry while
        holding their concurrency slot call it again before every resend.
        """
        async with self._lock:
            now = self._clock()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.min_interval
        if wait > 0:
            self._stats.total_delayed += 1
            self._stats.total_wait_time += wait
            log.debug("Waiting for rate limit slot", service_id=self.service_id, wait=wait)
            await self._sleep(wait)

    def release(self) -> None:
        """Release a slot after the request completes (success or failure)."""
        if self._stats.in_flight > 0:
            self._stats.in_flight -= 1

    async def __aenter__(self) -> "ServiceRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def get_stats(self) -> RateLimitStats:
        """Get a snapshot of limiter statistics."""
        return RateLimitStats(**vars(self._stats))
