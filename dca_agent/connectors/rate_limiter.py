"""Token-bucket rate limiter for outbound calls.

Keeps the reasoning backend and the relay under their request quotas.
Everything runs on one event loop, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class BucketConfig:
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    "openai": BucketConfig(tokens_per_second=3.0, max_burst=5, name="OpenAI"),
    "relay": BucketConfig(tokens_per_second=2.0, max_burst=4, name="Relay"),
    "market_data": BucketConfig(tokens_per_second=5.0, max_burst=10, name="Market data"),
}


class TokenBucket:

    def __init__(self, config: BucketConfig, clock: Callable[[], float] = time.monotonic):
        self._config = config
        self._clock = clock
        self._tokens = float(config.max_burst)
        self._last_refill = clock()
        self.total_requests = 0
        self.total_waits = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self._config.max_burst),
            self._tokens + elapsed * self._config.tokens_per_second,
        )
        self._last_refill = now

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            self.total_requests += 1
            return True
        return False

    def wait_time(self) -> float:
        """Seconds until a token is available."""
        self._refill()
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self._config.tokens_per_second

    async def acquire(self) -> None:
        while not self.try_acquire():
            self.total_waits += 1
            await asyncio.sleep(self.wait_time())


class RateLimiterRegistry:
    """Per-endpoint buckets, created lazily from ``DEFAULT_LIMITS``."""

    def __init__(self, limits: dict[str, BucketConfig] | None = None):
        self._limits = dict(DEFAULT_LIMITS)
        if limits:
            self._limits.update(limits)
        self._buckets: dict[str, TokenBucket] = {}

    def get(self, endpoint: str) -> TokenBucket:
        if endpoint not in self._buckets:
            config = self._limits.get(
                endpoint, BucketConfig(tokens_per_second=5.0, max_burst=10, name=endpoint),
            )
            self._buckets[endpoint] = TokenBucket(config)
        return self._buckets[endpoint]

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            name: {"total_requests": b.total_requests, "total_waits": b.total_waits}
            for name, b in self._buckets.items()
        }
