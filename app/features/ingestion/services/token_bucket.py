"""
Token bucket limiter for calls to external services.

The bucket is an explicit value handed to sync handlers through the job
context, so tests can swap the clock and workers in one process share it.
"""

import asyncio
import time
from collections.abc import Callable

from app.config import settings
from app.features.ingestion.domain.errors import RateLimitedError
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class TokenBucket:
    def __init__(
        self,
        capacity: float | None = None,
        refill_per_second: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = float(capacity if capacity is not None else settings.SYNC_RATE_LIMIT_CAPACITY)
        self.refill_per_second = float(
            refill_per_second
            if refill_per_second is not None
            else settings.SYNC_RATE_LIMIT_REFILL_PER_SECOND
        )
        if self.capacity <= 0 or self.refill_per_second <= 0:
            raise ValueError("Token bucket capacity and refill rate must be positive")

        self._clock = clock
        self._tokens = self.capacity
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated_at, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated_at = now

    def try_acquire(self, tokens: float = 1) -> bool:
        """Take tokens if available right now."""
        if tokens > self.capacity:
            raise ValueError(f"Cannot take {tokens} tokens from a bucket of {self.capacity}")
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1) -> float:
        """Seconds until the requested tokens will be available."""
        self._refill()
        missing = tokens - self._tokens
        return max(missing, 0.0) / self.refill_per_second

    async def acquire(self, tokens: float = 1, timeout: float | None = None) -> None:
        """
        Wait until tokens are available and take them.

        Raises:
            RateLimitedError: the wait would exceed timeout
        """
        async with self._lock:
            while not self.try_acquire(tokens):
                delay = self.wait_time(tokens)
                if timeout is not None and delay > timeout:
                    raise RateLimitedError(
                        f"Rate limit wait of {delay:.2f}s exceeds {timeout:.2f}s",
                        retry_after=delay,
                    )
                logger.debug("Rate limited; waiting", delay_seconds=round(delay, 3))
                await asyncio.sleep(delay)
                if timeout is not None:
                    timeout -= delay
