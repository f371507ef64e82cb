"""
Circuit Breaker - Stops calling a provider that keeps failing.

    CLOSED     normal operation; failures inside the window are counted
    OPEN       every request is refused until reset_timeout has passed
               since the last failure
    HALF_OPEN  requests go through; success_threshold successes close the
               circuit, any failure opens it again

The bridge records one outcome per upstream fetch (after retries), so a
single flaky request never counts more than once.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

logger = logging.getLogger(__name__)


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerStats:
    state: CircuitState
    failures: int
    successes: int
    total_requests: int
    total_failures: int
    total_successes: int
    rejected: int
    last_failure_time: float | None = None
    last_state_change: float = 0.0

    def to_dict(self) -> dict:
        return {
            "state": str(self.state),
            "failures": self.failures,
            "successes": self.successes,
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "rejected": self.rejected,
            "last_failure_time": self.last_failure_time,
            "last_state_change": self.last_state_change,
        }


@dataclass
class CircuitBreaker:
    """
    Failure-counting breaker for one provider.

    Example:
        breaker = CircuitBreaker("reddit")
        if not breaker.allow_request():
            raise CircuitOpen("reddit", breaker.retry_in())
        try:
            result = await call()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    name: str
    failure_threshold: int = 5
    reset_timeout: float = 30.0  # seconds OPEN before a trial request
    success_threshold: int = 2  # HALF_OPEN successes needed to close
    window: float = 60.0  # seconds over which failures are counted
    clock: Callable[[], float] = time.monotonic

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_times: list[float] = field(default_factory=list, init=False, repr=False)
    _successes: int = field(default=0, init=False)
    _last_failure_time: float | None = field(default=None, init=False)
    _last_state_change: float = field(default=0.0, init=False)
    _total_requests: int = field(default=0, init=False)
    _total_failures: int = field(default=0, init=False)
    _total_successes: int = field(default=0, init=False)
    _rejected: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"Circuit '{self.name}': failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError(f"Circuit '{self.name}': success_threshold must be >= 1")
        self._last_state_change = self.clock()

    def _transition(self, new_state: CircuitState) -> None:
        if self.state == new_state:
            return
        logger.warning(f"Circuit {self.name}: {self.state} → {new_state}")
        self.state = new_state
        self._last_state_change = self.clock()
        self._successes = 0
        if new_state == CircuitState.CLOSED:
            self._failure_times.clear()

    def _refresh(self) -> None:
        """Move OPEN to HALF_OPEN once the reset timeout has elapsed."""
        if self.state == CircuitState.OPEN and self._last_failure_time is not None:
            if self.clock() - self._last_failure_time >= self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)

    @property
    def is_open(self) -> bool:
        self._refresh()
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Count the request; False if the circuit is open and it must be refused."""
        self._total_requests += 1
        if self.is_open:
            self._rejected += 1
            return False
        return True

    def retry_in(self) -> float:
        """Seconds until an open circuit lets a trial request through."""
        if self.state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        return max(0.0, self.reset_timeout - (self.clock() - self._last_failure_time))

    def record_success(self) -> None:
        self._total_successes += 1
        self._failure_times.clear()
        if self.state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        now = self.clock()
        self._total_failures += 1
        self._last_failure_time = now

        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return

        self._failure_times.append(now)
        self._failure_times = [t for t in self._failure_times if t > now - self.window]
        if self.state == CircuitState.CLOSED and len(self._failure_times) >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._last_failure_time = None

    def get_stats(self) -> CircuitBreakerStats:
        self._refresh()
        return CircuitBreakerStats(
            state=self.state,
            failures=len(self._failure_times),
            successes=self._successes,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            rejected=self._rejected,
            last_failure_time=self._last_failure_time,
            last_state_change=self._last_state_change,
        )
