"""Per-service call spacing shared by every worker in the process."""

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

import structlog

from .config import SERVICE_INTERVALS_MS

log = structlog.get_logger()


class RateLimiter:
    """Spaces out calls to each external service.

    One instance is created at process start and injected into every
    provider, so workers hitting the same service are spaced globally.
    The last-granted timestamp for a service is only read and written
    while holding that service's lock.
    """

    def __init__(
        self,
        intervals_ms: Optional[Dict[str, int]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.intervals_ms = dict(SERVICE_INTERVALS_MS if intervals_ms is None else intervals_ms)
        self._clock = clock
        self._sleep = sleep
        self._last_granted: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, service_id: str) -> asyncio.Lock:
        lock = self._locks.get(service_id)
        if lock is None:
            lock = self._locks[service_id] = asyncio.Lock()
        return lock

    async def acquire(self, service_id: str, min_interval_ms: Optional[int] = None) -> float:
        """Wait until ``service_id`` may be called again. Returns seconds waited."""
        if min_interval_ms is None:
            min_interval_ms = self.intervals_ms.get(service_id, 0)

        async with self._lock_for(service_id):
            waited = 0.0
            last = self._last_granted.get(service_id)
            if last is not None:
                remaining = min_interval_ms / 1000 - (self._clock() - last)
                if remaining > 0:
                    log.debug("Rate limiting", service=service_id, wait_ms=round(remaining * 1000))
                    await self._sleep(remaining)
                    waited = remaining
            self._last_granted[service_id] = self._clock()
            return waited

    def last_granted(self, service_id: str) -> Optional[float]:
        return self._last_granted.get(service_id)
