"""
Retry Policy - Exponential backoff with jitter for provider calls.

Attempt 1 runs immediately. Before attempt k (k > 1) the policy waits
    base_delay * 2 ** (k - 2) + uniform(0, base_delay * jitter_ratio)
capped at max_delay. Terminal failures are re-raised untouched.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ideaforge.errors import RetryExhausted, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient_error(error: BaseException) -> bool:
    """Default classification: only TransientProviderError is worth retrying."""
    return isinstance(error, TransientProviderError)


class RetryPolicy:
    """Retries an async operation while its failures are transient."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter_ratio: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._sleep = sleep
        self._rng = rng or random.Random()

    def delay_for(self, attempt: int, base_delay: float | None = None) -> float:
        """Delay to wait before `attempt` (1-based). Attempt 1 never waits."""
        if attempt <= 1:
            return 0.0
        base = self.base_delay if base_delay is None else base_delay
        backoff = base * 2 ** (attempt - 2)
        jitter = self._rng.uniform(0, base * self.jitter_ratio)
        return min(backoff + jitter, self.max_delay)

    async def execute(
        self,
        op: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        base_delay: float | None = None,
        is_transient: Callable[[BaseException], bool] = is_transient_error,
        label: str = "operation",
    ) -> T:
        """
        Run op until it succeeds, fails terminally, or attempts run out.

        Raises:
            RetryExhausted: After max_attempts transient failures
            Exception: Any terminal failure from op, unchanged
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        attempt = 1
        while True:
            try:
                return await op()
            except Exception as e:
                if not is_transient(e):
                    raise
                logger.warning(f"{label} failed on attempt {attempt}/{attempts}: {e}")
                if attempt >= attempts:
                    raise RetryExhausted(attempts, e) from e
                delay = self.delay_for(attempt + 1, base_delay)
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = min(max(delay, retry_after), self.max_delay)

            attempt += 1
            logger.info(
                f"Retrying {label} (attempt {attempt}/{attempts}) in {delay:.2f}s",
                extra={"attempt": attempt},
            )
            await self._sleep(delay)
