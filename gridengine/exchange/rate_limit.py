"""
Request budgets shared by every Runner trading through the same API key.

Binance counts request weight per IP and order rate per account. One
AsyncTokenBucket per credential is handed out by CredentialRateLimiter so
sibling Runners queue behind each other instead of tripping -1003.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Dict


@dataclass
class BackoffConfig:
    """Exponential backoff policy for transient API errors."""
    base_delay_sec: float = 1.0
    max_delay_sec: float = 60.0
    jitter_sec: float = 0.25

    def delay(self, attempt: int) -> float:
        exp = self.base_delay_sec * (2 ** max(0, attempt))
        return min(self.max_delay_sec, exp) + random.random() * self.jitter_sec


class AsyncTokenBucket:
    """
    Async token bucket. Callers wait for tokens; nothing is ever rejected.

    rate_per_sec: steady refill rate.
    burst: max token capacity.
    """

    def __init__(self, rate_per_sec: float, burst: float):
        self.rate_per_sec = max(rate_per_sec, 0.1)
        self.capacity = max(burst, 1.0)
        self.tokens = self.capacity
        self._last = time.monotonic()
        self._lock = asyncio.Lock()
        self.waits = 0

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_sec)

    async def acquire(self, weight: float = 1.0) -> None:
        """Block until enough tokens are available."""
        need = min(max(weight, 0.0), self.capacity)
        while True:
            async with self._lock:
                self._refill()
                if self.tokens >= need:
                    self.tokens -= need
                    return
                wait_for = (need - self.tokens) / self.rate_per_sec
                self.waits += 1
            await asyncio.sleep(max(wait_for, 0.001))


class CredentialRateLimiter:
    """
    One shared bucket per api_key, created on first use.

    Unsigned market-data calls carry no key and count against the process IP,
    so they all draw from the single public_bucket.
    """

    def __init__(
        self,
        rate_per_sec: float = 10.0,
        burst: float = 20.0,
        public_rate_per_sec: float = 20.0,
        public_burst: float = 40.0,
    ) -> None:
        self._rate = rate_per_sec
        self._burst = burst
        self._buckets: Dict[str, AsyncTokenBucket] = {}
        self.public_bucket = AsyncTokenBucket(public_rate_per_sec, public_burst)

    def bucket_for(self, api_key: str) -> AsyncTokenBucket:
        # Runs without awaiting, so creation is atomic on the event loop.
        bucket = self._buckets.get(api_key)
        if bucket is None:
            bucket = AsyncTokenBucket(self._rate, self._burst)
            self._buckets[api_key] = bucket
        return bucket

    def __len__(self) -> int:
        return len(self._buckets)
