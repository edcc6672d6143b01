"""
Request Rate Limiter

Keeps market-data polling under the data API's rate limits when many
wallets are checked concurrently.

- Token bucket for the sustained request rate (refills over time)
- Semaphore for the number of in-flight requests
- Timeout so a starved caller fails instead of waiting forever
"""

import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class RequestRateLimiter:

    def __init__(
        self,
        requests_per_second: float = 10.0,
        max_concurrent: int = 20,
        queue_timeout: float = 10.0,
        burst_capacity: Optional[int] = None
    ):
        """
        Args:
            requests_per_second: Max sustained request rate
            max_concurrent: Max simultaneous in-flight requests
            queue_timeout: Seconds to wait for a slot before giving up
            burst_capacity: Max tokens for bursts (default: 2x RPS, at least 5)
        """
        self.rps = requests_per_second
        self.max_concurrent = max_concurrent
        self.queue_timeout = queue_timeout
        self.burst_capacity = burst_capacity or max(int(requests_per_second * 2), 5)

        self._tokens = float(self.burst_capacity)
        self._last_refill = time.monotonic()
        self._token_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max_concurrent)

        self.total_acquired = 0
        self.total_timeouts = 0

        logger.info(f"🚦 RequestRateLimiter initialized: {requests_per_second} RPS, {max_concurrent} concurrent, burst {self.burst_capacity}")

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(self._tokens + (now - self._last_refill) * self.rps, self.burst_capacity)
        self._last_refill = now

    async def _wait_for_token(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout

        while True:
            async with self._token_lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                wait_time = (1.0 - self._tokens) / self.rps

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(wait_time, remaining, 0.1))

    def acquire(self) -> "_RateLimitContext":
        """
        Usage:
            async with limiter.acquire():
                resp = await client.get(...)

        Raises:
            asyncio.TimeoutError if no slot frees up within queue_timeout
        """
        return _RateLimitContext(self)


class _RateLimitContext:

    def __init__(self, limiter: RequestRateLimiter):
        self.limiter = limiter

    async def __aenter__(self):
        if not await self.limiter._wait_for_token(self.limiter.queue_timeout):
            self.limiter.total_timeouts += 1
            raise asyncio.TimeoutError(f"Rate limit queue timeout after {self.limiter.queue_timeout}s")
        try:
            await asyncio.wait_for(self.limiter._semaphore.acquire(), timeout=self.limiter.queue_timeout)
        except asyncio.TimeoutError:
            self.limiter.total_timeouts += 1
            raise
        self.limiter.total_acquired += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.limiter._semaphore.release()
        return False
