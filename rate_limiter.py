"""
Page Gobbler - Rate Limiter
Spaces out calls to the page-snapshot primitive.

Browsers allow at most 2 visible-region snapshots per second (500ms apart);
the default interval adds a 50ms buffer on top of that.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MIN_CAPTURE_INTERVAL_MS = 550


class RateLimiter:
    """
    Enforces a minimum interval between successive acquisitions.

    Waiters are woken in FIFO order (asyncio.Lock queues them). acquire()
    never fails, it only delays.
    """

    def __init__(
        self,
        min_interval_ms: float = MIN_CAPTURE_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep,
    ):
        """
        Initialize rate limiter

        Args:
            min_interval_ms: Minimum spacing between acquisitions
            clock: Monotonic clock in seconds (injectable for tests)
            sleep: Async sleep function (injectable for tests)
        """
        self.min_interval_ms = min_interval_ms
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_acquired: Optional[float] = None
        self._acquisitions = 0
        self._total_wait_s = 0.0

    async def acquire(self):
        """Wait until min_interval_ms has passed since the previous acquisition"""
        async with self._lock:
            if self._last_acquired is not None:
                elapsed = self._clock() - self._last_acquired
                wait_s = self.min_interval_ms / 1000 - elapsed
                if wait_s > 0:
                    logger.debug(f"[RateLimiter] Waiting {wait_s * 1000:.0f}ms before next snapshot")
                    self._total_wait_s += wait_s
                    await self._sleep(wait_s)
            self._last_acquired = self._clock()
            self._acquisitions += 1

    def get_stats(self) -> dict:
        """Get limiter statistics"""
        return {
            "min_interval_ms": self.min_interval_ms,
            "acquisitions": self._acquisitions,
            "total_wait_ms": round(self._total_wait_s * 1000, 1),
        }


# Process-wide instance shared by every orchestrator
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter(min_interval_ms: float = MIN_CAPTURE_INTERVAL_MS) -> RateLimiter:
    """Get the shared RateLimiter, creating it on first use (later intervals are ignored)"""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(min_interval_ms)
        logger.info(f"[RateLimiter] Initialized ({min_interval_ms}ms minimum interval)")
    elif min_interval_ms != _rate_limiter.min_interval_ms:
        logger.warning(
            f"[RateLimiter] Requested {min_interval_ms}ms interval ignored, "
            f"shared limiter already uses {_rate_limiter.min_interval_ms}ms"
        )
    return _rate_limiter
