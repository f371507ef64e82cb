"""
Research Schemas - requests to, and results from, external research providers.

Results are frozen: once produced (or served from cache) they never change.
"""

import re
from datetime import datetime

from pydantic import BaseModel, Field

_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lower-case, trim and collapse whitespace so equivalent queries share a cache key."""
    return _WHITESPACE.sub(" ", query.strip().lower())


class ResearchRequest(BaseModel):
    """A node's request for research from one provider."""

    provider: str
    query: str
    session_id: str = "default"
    limit: int = 10

    model_config = {"frozen": True}

    @property
    def normalized_query(self) -> str:
        return normalize_query(self.query)

    @property
    def cache_key(self) -> tuple[str, str]:
        return (self.provider, self.normalized_query)


class ResearchHit(BaseModel):
    """One normalised search hit."""

    title: str = ""
    url: str = ""
    snippet: str = ""
    score: float = 0.0
    source: str = ""

    model_config = {"frozen": True, "extra": "allow"}


class ResearchResult(BaseModel):
    """Normalised provider answer."""

    provider: str
    query: str
    hits: tuple[ResearchHit, ...] = ()
    cache_hit: bool = False
    fetched_at: str = Field(default_factory=lambda: datetime.now().isoformat())

    model_config = {"frozen": True}

    def with_cache_hit(self) -> "ResearchResult":
        """Copy of this result flagged as served from cache."""
        return self.model_copy(update={"cache_hit": True})

    @property
    def total(self) -> int:
        return len(self.hits)
