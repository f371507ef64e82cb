"""
Rate Limiter - Per-provider token buckets.

Buckets refill lazily: nothing runs in the background, tokens are topped up
from the elapsed monotonic time whenever a caller asks for one. Waiters for
the same provider are served in arrival order; providers never contend with
each other.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ideaforge.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    """Rate budget for one provider."""

    capacity: int
    refill_rate: float  # Tokens per second
    tokens: float = field(default=-1.0)
    last_refill: float = 0.0

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be positive")
        if self.tokens < 0:
            self.tokens = float(self.capacity)

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_consume(self, now: float) -> bool:
        self.refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def time_until_token(self) -> float:
        """Seconds until one whole token is available (0 if one is already)."""
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.refill_rate


class RateLimiter:
    """
    Token-bucket limiter keyed by provider name.

    Example:
        limiter = RateLimiter({"hackernews": (10, 10.0), "reddit": (1, 1.0)})
        await limiter.acquire("reddit", timeout=5.0)
    """

    def __init__(
        self,
        budgets: dict[str, tuple[int, float]] | None = None,
        default_budget: tuple[int, float] = (5, 5.0),
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            budgets: provider -> (capacity, refill_rate per second)
            default_budget: Budget for providers not listed in budgets
            clock: Monotonic clock (seconds)
            sleep: Async sleep used while waiting for a token
        """
        self._budgets = dict(budgets or {})
        self._default_budget = default_budget
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}
        self._waiters: dict[str, asyncio.Lock] = {}

    def _bucket(self, provider: str) -> TokenBucket:
        bucket = self._buckets.get(provider)
        if bucket is None:
            capacity, refill_rate = self._budgets.get(provider, self._default_budget)
            bucket = TokenBucket(
                capacity=capacity,
                refill_rate=refill_rate,
                last_refill=self._clock(),
            )
            self._buckets[provider] = bucket
        return bucket

    def _waiter_lock(self, provider: str) -> asyncio.Lock:
        lock = self._waiters.get(provider)
        if lock is None:
            lock = asyncio.Lock()
            self._waiters[provider] = lock
        return lock

    def configure(self, provider: str, capacity: int, refill_rate: float) -> None:
        """Set (or replace) a provider's budget. Its bucket restarts full."""
        self._budgets[provider] = (capacity, refill_rate)
        self._buckets.pop(provider, None)

    def try_consume(self, provider: str) -> bool:
        """Take one token if one is available right now."""
        return self._bucket(provider).try_consume(self._clock())

    def available(self, provider: str) -> float:
        """Tokens currently available (after refill)."""
        bucket = self._bucket(provider)
        bucket.refill(self._clock())
        return bucket.tokens

    async def acquire(self, provider: str, timeout: float | None = None) -> None:
        """
        Wait for a token.

        Callers for the same provider queue behind a lock, so tokens are
        handed out in arrival order.

        Raises:
            RateLimited: If no token became available within timeout
        """
        start = self._clock()
        lock = self._waiter_lock(provider)

        try:
            if timeout is not None:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except TimeoutError:
            raise RateLimited(provider, self._clock() - start) from None

        try:
            bucket = self._bucket(provider)
            while not bucket.try_consume(self._clock()):
                wait = bucket.time_until_token()
                waited = self._clock() - start
                if timeout is not None and waited + wait > timeout:
                    logger.warning(f"Rate limit for {provider} exceeded wait timeout of {timeout}s")
                    raise RateLimited(provider, waited)
                logger.debug(f"Waiting {wait:.3f}s for {provider} rate limit token")
                await self._sleep(wait)
        finally:
            lock.release()

    def reset(self, provider: str | None = None) -> None:
        """Refill one provider's bucket (or all buckets)."""
        if provider is None:
            self._buckets.clear()
        else:
            self._buckets.pop(provider, None)
