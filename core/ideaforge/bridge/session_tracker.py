"""Per-session research metrics: requests, outcomes and response times."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

MAX_ERRORS_PER_SESSION = 50


@dataclass
class SessionMetrics:
    """Research activity of one session."""

    session_id: str
    started_at: float
    last_activity: float
    requests: int = 0
    successes: int = 0
    failures: int = 0
    cache_hits: int = 0
    total_response_ms: float = 0.0
    providers: set[str] = field(default_factory=set)
    queries: set[str] = field(default_factory=set)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def average_response_ms(self) -> float:
        # Cache hits never reach a provider, so they do not count toward latency
        upstream = self.successes + self.failures
        return self.total_response_ms / upstream if upstream else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "last_activity": self.last_activity,
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "cache_hits": self.cache_hits,
            "average_response_ms": round(self.average_response_ms, 1),
            "providers": sorted(self.providers),
            "queries": sorted(self.queries),
            "errors": list(self.errors),
        }


class SessionTracker:
    """
    Correlates research requests with the session that made them.

    Sessions idle for longer than max_session_age are dropped by cleanup().
    """

    def __init__(
        self,
        max_session_age: float = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_session_age = max_session_age
        self._clock = clock
        self._sessions: dict[str, SessionMetrics] = {}

    def _touch(self, session_id: str, provider: str, query: str) -> SessionMetrics:
        now = self._clock()
        metrics = self._sessions.get(session_id)
        if metrics is None:
            metrics = SessionMetrics(session_id=session_id, started_at=now, last_activity=now)
            self._sessions[session_id] = metrics
        metrics.last_activity = now
        metrics.requests += 1
        metrics.providers.add(provider)
        metrics.queries.add(query)
        return metrics

    def track_cache_hit(self, session_id: str, provider: str, query: str) -> None:
        self._touch(session_id, provider, query).cache_hits += 1

    def track_success(self, session_id: str, provider: str, query: str, response_ms: float) -> None:
        metrics = self._touch(session_id, provider, query)
        metrics.successes += 1
        metrics.total_response_ms += response_ms

    def track_failure(
        self,
        session_id: str,
        provider: str,
        query: str,
        error: BaseException | str,
        response_ms: float = 0.0,
    ) -> None:
        metrics = self._touch(session_id, provider, query)
        metrics.failures += 1
        metrics.total_response_ms += response_ms
        metrics.errors.append(
            {
                "timestamp": self._clock(),
                "provider": provider,
                "error": str(error),
                "type": type(error).__name__ if isinstance(error, BaseException) else "str",
            }
        )
        if len(metrics.errors) > MAX_ERRORS_PER_SESSION:
            metrics.errors = metrics.errors[-MAX_ERRORS_PER_SESSION:]

    def get_session_metrics(self, session_id: str) -> dict[str, Any] | None:
        metrics = self._sessions.get(session_id)
        return metrics.to_dict() if metrics is not None else None

    def get_stats(self) -> dict[str, Any]:
        """Aggregate over every tracked session."""
        sessions = list(self._sessions.values())
        total_requests = sum(m.requests for m in sessions)
        provider_counts: dict[str, int] = {}
        for m in sessions:
            for provider in m.providers:
                provider_counts[provider] = provider_counts.get(provider, 0) + 1
        return {
            "total_sessions": len(sessions),
            "total_requests": total_requests,
            "total_failures": sum(m.failures for m in sessions),
            "average_requests_per_session": total_requests / len(sessions) if sessions else 0.0,
            "sessions_by_provider": provider_counts,
        }

    def error_sessions(self) -> list[str]:
        return [m.session_id for m in self._sessions.values() if m.errors]

    def forget(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def cleanup(self) -> int:
        """
        Drop sessions idle for longer than max_session_age.

        Returns:
            Number of sessions removed
        """
        cutoff = self._clock() - self.max_session_age
        stale = [sid for sid, m in self._sessions.items() if m.last_activity < cutoff]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)
