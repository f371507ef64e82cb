"""
Research bridge - rate limiting, caching, retries and circuit breaking around research providers.
"""

from ideaforge.bridge.cache import CacheEntry, ResponseCache
from ideaforge.bridge.circuit_breaker import CircuitBreaker, CircuitState
from ideaforge.bridge.providers import (
    ResearchProvider,
    WebhookResearchProvider,
    hackernews_provider,
    reddit_provider,
)
from ideaforge.bridge.rate_limiter import RateLimiter, TokenBucket
from ideaforge.bridge.research_bridge import ResearchBridge
from ideaforge.bridge.retry import RetryPolicy
from ideaforge.bridge.session_tracker import SessionMetrics, SessionTracker

__all__ = [
    "CacheEntry",
    "CircuitBreaker",
    "CircuitState",
    "RateLimiter",
    "ResearchBridge",
    "ResearchProvider",
    "ResponseCache",
    "RetryPolicy",
    "SessionMetrics",
    "SessionTracker",
    "TokenBucket",
    "WebhookResearchProvider",
    "hackernews_provider",
    "reddit_provider",
]
