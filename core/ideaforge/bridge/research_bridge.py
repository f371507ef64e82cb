"""
Research Bridge - Rate-limited, cached, retried access to research providers.

Per fetch:
    1. Live cache entry            -> returned with cache_hit=True (no token spent)
    2. Circuit breaker             -> CircuitOpen while the provider keeps failing
    3. Rate limit token            -> RateLimited if none within wait_timeout
    4. Provider call under retry   -> transient failures retried with backoff
    5. Success                     -> cached with the provider TTL
    6. Retries exhausted/terminal  -> ProviderUnavailable (counted by the breaker)

The limiter, cache and breakers are shared by every session using the bridge;
per-session request metrics are kept by a SessionTracker.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass

import httpx

from ideaforge.bridge.cache import ResponseCache
from ideaforge.bridge.circuit_breaker import CircuitBreaker
from ideaforge.bridge.providers import ResearchProvider, default_providers
from ideaforge.bridge.rate_limiter import RateLimiter
from ideaforge.bridge.retry import RetryPolicy
from ideaforge.bridge.session_tracker import SessionTracker
from ideaforge.config import BridgeConfig
from ideaforge.errors import (
    CircuitOpen,
    ProviderUnavailable,
    RateLimited,
    ResearchError,
    RetryExhausted,
)
from ideaforge.schemas.research import ResearchRequest, ResearchResult

logger = logging.getLogger(__name__)


@dataclass
class ProviderStats:
    requests: int = 0
    cache_hits: int = 0
    upstream_calls: int = 0
    failures: int = 0
    rate_limited: int = 0
    circuit_rejected: int = 0

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "cache_hits": self.cache_hits,
            "upstream_calls": self.upstream_calls,
            "failures": self.failures,
            "rate_limited": self.rate_limited,
            "circuit_rejected": self.circuit_rejected,
        }


class ResearchBridge:
    """
    Gateway between pipeline nodes and external research providers.

    Example:
        async with ResearchBridge.from_config(BridgeConfig.from_sources()) as bridge:
            result = await bridge.fetch(ResearchRequest(provider="hackernews", query="htmx"))
    """

    def __init__(
        self,
        providers: dict[str, ResearchProvider],
        config: BridgeConfig | None = None,
        limiter: RateLimiter | None = None,
        cache: ResponseCache | None = None,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sessions: SessionTracker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the bridge.

        Args:
            providers: provider name -> provider
            config: Budgets, TTLs and retry settings per provider
            limiter: Shared rate limiter (built from config if omitted)
            cache: Shared response cache
            retry: Retry policy (sleep/random injectable for tests)
            client: HTTP client owned by the bridge, closed by aclose()
            sessions: Per-session request metrics
            clock: Monotonic clock for the circuit breakers
        """
        self.config = config or BridgeConfig()
        self._providers = dict(providers)
        self.limiter = limiter or RateLimiter(
            budgets={name: (p.capacity, p.refill_rate) for name, p in self.config.providers.items()},
            default_budget=(self.config.default_provider.capacity, self.config.default_provider.refill_rate),
        )
        if cache is None:
            cache = ResponseCache(default_ttl=self.config.default_provider.ttl_seconds)
        self.cache = cache
        self.retry = retry or RetryPolicy(max_delay=self.config.default_provider.max_delay)
        self._client = client
        self.sessions = sessions if sessions is not None else SessionTracker()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._stats: dict[str, ProviderStats] = {}

    @classmethod
    def from_config(cls, config: BridgeConfig, client: httpx.AsyncClient | None = None) -> "ResearchBridge":
        """Bridge wired to the built-in webhook providers over one shared client."""
        client = client or httpx.AsyncClient()
        return cls(default_providers(config, client), config=config, client=client)

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    def register_provider(self, provider: ResearchProvider) -> None:
        self._providers[provider.name] = provider

    def _stats_for(self, provider: str) -> ProviderStats:
        stats = self._stats.get(provider)
        if stats is None:
            stats = ProviderStats()
            self._stats[provider] = stats
        return stats

    def breaker_for(self, provider: str) -> CircuitBreaker:
        """The provider's circuit breaker, built from its settings on first use."""
        breaker = self._breakers.get(provider)
        if breaker is None:
            settings = self.config.provider(provider)
            breaker = CircuitBreaker(
                provider,
                failure_threshold=settings.failure_threshold,
                reset_timeout=settings.reset_timeout,
                success_threshold=settings.success_threshold,
                clock=self._clock,
            )
            self._breakers[provider] = breaker
        return breaker

    async def fetch(
        self,
        request: ResearchRequest,
        allowed: Collection[str] | None = None,
    ) -> ResearchResult:
        """
        Fetch research for one request.

        Args:
            request: Provider, query and session
            allowed: Providers permitted for the calling run (None = all)

        Raises:
            RateLimited: No rate limit token within the provider's wait timeout
            CircuitOpen: The provider's circuit breaker is open
            ProviderUnavailable: Unknown/disallowed provider, terminal failure
                or retries exhausted
        """
        name = request.provider
        stats = self._stats_for(name)
        stats.requests += 1

        provider = self._providers.get(name)
        if provider is None:
            stats.failures += 1
            raise ProviderUnavailable(name, LookupError(f"unknown provider '{name}'"))
        if allowed is not None and name not in allowed:
            stats.failures += 1
            raise ProviderUnavailable(name, PermissionError(f"provider '{name}' not enabled for this run"))

        settings = self.config.provider(name)
        breaker = self.breaker_for(name)
        start = time.perf_counter()

        async def populate() -> ResearchResult:
            if not breaker.allow_request():
                stats.circuit_rejected += 1
                raise CircuitOpen(name, breaker.retry_in())

            try:
                await self.limiter.acquire(name, timeout=settings.wait_timeout)
            except RateLimited:
                stats.rate_limited += 1
                raise

            async def call() -> list:
                stats.upstream_calls += 1
                return await provider.search(
                    request.query,
                    limit=request.limit,
                    session_id=request.session_id,
                )

            try:
                hits = await self.retry.execute(
                    call,
                    max_attempts=settings.max_attempts,
                    base_delay=settings.base_delay,
                    label=f"{name} search",
                )
            except RetryExhausted as e:
                stats.failures += 1
                breaker.record_failure()
                logger.error(f"{name} unavailable after {e.attempts} attempts: {e.last_error}")
                raise ProviderUnavailable(name, e.last_error, attempts=e.attempts) from e
            except Exception as e:
                stats.failures += 1
                breaker.record_failure()
                logger.error(f"{name} rejected request: {e}")
                raise ProviderUnavailable(name, e, attempts=1) from e

            breaker.record_success()
            return ResearchResult(provider=name, query=request.query, hits=tuple(hits))

        try:
            result, was_cached = await self.cache.get_or_populate(
                request.cache_key,
                populate,
                ttl=settings.ttl_seconds,
            )
        except ResearchError as e:
            latency_ms = round((time.perf_counter() - start) * 1000, 1)
            self.sessions.track_failure(request.session_id, name, request.normalized_query, e, latency_ms)
            raise

        if was_cached:
            stats.cache_hits += 1
            self.sessions.track_cache_hit(request.session_id, name, request.normalized_query)
            logger.debug(f"Cache hit for {name}: {request.normalized_query!r}", extra={"cache_hit": True})
            return result.with_cache_hit()

        latency_ms = round((time.perf_counter() - start) * 1000, 1)
        self.sessions.track_success(request.session_id, name, request.normalized_query, latency_ms)
        logger.info(
            f"{name} returned {result.total} hits for {request.normalized_query!r}",
            extra={"provider": name, "latency_ms": latency_ms, "cache_hit": False},
        )
        return result

    async def fetch_many(
        self,
        requests: Iterable[ResearchRequest],
        max_concurrency: int | None = None,
        allowed: Collection[str] | None = None,
    ) -> list[ResearchResult | ResearchError]:
        """
        Fetch several requests with bounded concurrency.

        Returns:
            One entry per request, in order: the result or the ResearchError it raised
        """
        semaphore = asyncio.Semaphore(max_concurrency or self.config.max_concurrency)

        async def run_one(request: ResearchRequest) -> ResearchResult | ResearchError:
            async with semaphore:
                try:
                    return await self.fetch(request, allowed=allowed)
                except ResearchError as e:
                    return e

        return list(await asyncio.gather(*(run_one(r) for r in requests)))

    def stats(self) -> dict[str, dict]:
        """Per-provider counters."""
        return {name: stats.to_dict() for name, stats in self._stats.items()}

    def circuit_stats(self) -> dict[str, dict]:
        """Circuit breaker state per provider that has been used."""
        return {name: breaker.get_stats().to_dict() for name, breaker in self._breakers.items()}

    def session_metrics(self, session_id: str) -> dict | None:
        return self.sessions.get_session_metrics(session_id)

    async def aclose(self) -> None:
        """Close the owned HTTP client (if any)."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ResearchBridge":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
