"""
Adaptive throttle shared by every remote call, backing off on HTTP 429.
"""

import asyncio
import logging
import time

log = logging.getLogger(__name__)

# Seconds without a 429 before the rate starts creeping back up
RECOVERY_QUIET_PERIOD = 300


class AdaptiveRateLimiter:
    """
    Spaces out calls to at most ``rate`` per second. Each 429 halves the rate
    (never below one call per second); after a quiet period it slowly recovers
    towards ``max_calls_per_second``.
    """

    def __init__(
        self, initial_calls_per_second: float = 8.0, max_calls_per_second: float = 12.0
    ):
        self._rate = initial_calls_per_second
        self._max_rate = max_calls_per_second
        self._min_interval = 1.0 / self._rate
        self._last_call_time = 0.0
        self._last_429_time = 0.0
        self._lock = asyncio.Lock()

    @property
    def rate(self) -> float:
        return self._rate

    async def on_429(self, retry_after: float | None = None) -> None:
        """Halves the current request rate and honours a server-supplied delay."""
        async with self._lock:
            self._rate = max(1.0, self._rate * 0.5)
            self._min_interval = 1.0 / self._rate
            self._last_429_time = time.monotonic()
            log.warning(
                f"[yellow]Rate limit hit. New rate: {self._rate:.1f} calls/s[/yellow]"
            )
            if retry_after:
                # Holding the lock keeps every other caller waiting as well
                await asyncio.sleep(min(retry_after, 60.0))

    async def acquire(self) -> None:
        """Waits until the next call is allowed under the current rate."""
        async with self._lock:
            if time.monotonic() - self._last_429_time > RECOVERY_QUIET_PERIOD:
                self._rate = min(self._max_rate, self._rate * 1.005)
                self._min_interval = 1.0 / self._rate

            loop = asyncio.get_running_loop()
            time_since_last = loop.time() - self._last_call_time
            if time_since_last < self._min_interval:
                await asyncio.sleep(self._min_interval - time_since_last)

            self._last_call_time = loop.time()
