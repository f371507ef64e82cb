"""
Research providers reached through webhook endpoints.

Each provider posts a JSON query to `<base_url>/<webhook_path>/<path>` and
normalises the answer into ResearchHit records. Failures are classified for
the retry policy:

- 429, 5xx, timeouts, transport errors -> TransientProviderError
- any other 4xx, malformed payloads     -> ProviderRequestError
"""

import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import httpx

from ideaforge.config import BridgeConfig, ProviderConfig
from ideaforge.errors import ProviderRequestError, TransientProviderError
from ideaforge.schemas.research import ResearchHit

logger = logging.getLogger(__name__)

HN_ITEM_URL = "https://news.ycombinator.com/item?id={}"
REDDIT_URL = "https://www.reddit.com{}"

BASE_SUBREDDITS = ["programming", "webdev", "learnprogramming"]
SUBREDDIT_KEYWORDS: list[tuple[tuple[str, ...], list[str]]] = [
    (("javascript", "js"), ["javascript", "node"]),
    (("typescript",), ["typescript"]),
    (("react",), ["reactjs", "reactnative"]),
    (("vue",), ["vuejs"]),
    (("angular",), ["angular"]),
    (("python",), ["python", "learnpython"]),
    (("django",), ["django"]),
    (("flask",), ["flask"]),
    (("rust",), ["rust"]),
    (("golang",), ["golang"]),
    (("java",), ["java"]),
    (("docker",), ["docker"]),
    (("kubernetes", "k8s"), ["kubernetes"]),
    (("aws",), ["aws"]),
    (("sql", "database"), ["Database", "SQL"]),
    (("mongodb",), ["mongodb"]),
]


@runtime_checkable
class ResearchProvider(Protocol):
    """Anything that can answer a search query."""

    name: str

    async def search(self, query: str, limit: int = 10, session_id: str = "default") -> list[ResearchHit]: ...


def tech_subreddits(query: str, max_subreddits: int = 10) -> list[str]:
    """Pick subreddits relevant to a technology query."""
    lowered = query.lower()
    selected = list(BASE_SUBREDDITS)
    for keywords, subreddits in SUBREDDIT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            selected.extend(s for s in subreddits if s not in selected)
    return selected[:max_subreddits]


def _extract_items(data: Any, *keys: str) -> list[dict]:
    """Find the list of result dicts in a webhook payload."""
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        for key in (*keys, "results", "data"):
            value = data.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
            if isinstance(value, dict):
                nested = _extract_items(value, *keys)
                if nested:
                    return nested
    return []


def parse_generic_results(data: Any, source: str) -> list[ResearchHit]:
    """Normalise a payload that already uses title/url/snippet/score."""
    hits = []
    for item in _extract_items(data, "hits", "items"):
        hits.append(
            ResearchHit(
                title=str(item.get("title") or ""),
                url=str(item.get("url") or ""),
                snippet=str(item.get("snippet") or item.get("content") or ""),
                score=float(item.get("score") or 0),
                source=str(item.get("source") or source),
            )
        )
    return hits


def parse_hackernews_results(data: Any) -> list[ResearchHit]:
    """Normalise Algolia-style HN hits."""
    hits = []
    for item in _extract_items(data, "hits"):
        object_id = item.get("objectID")
        title = item.get("title") or item.get("story_title") or ""
        url = item.get("url") or (HN_ITEM_URL.format(object_id) if object_id else "")
        snippet = item.get("snippet") or item.get("story_text") or item.get("comment_text") or ""
        score = item.get("score", item.get("points")) or 0
        hits.append(
            ResearchHit(
                title=str(title),
                url=str(url),
                snippet=str(snippet)[:500],
                score=float(score),
                source="hackernews",
            )
        )
    return hits


def parse_reddit_results(data: Any) -> list[ResearchHit]:
    """Normalise Reddit posts (raw listing children or flattened posts)."""
    hits = []
    for item in _extract_items(data, "posts", "children"):
        post = item.get("data", item) if isinstance(item.get("data"), dict) else item
        permalink = post.get("permalink") or ""
        url = post.get("url") or (REDDIT_URL.format(permalink) if permalink else "")
        snippet = post.get("snippet") or post.get("selftext") or post.get("body") or ""
        score = post.get("score", post.get("ups")) or 0
        hits.append(
            ResearchHit(
                title=str(post.get("title") or ""),
                url=str(url),
                snippet=str(snippet)[:500],
                score=float(score),
                source="reddit",
            )
        )
    return hits


class WebhookResearchProvider:
    """
    Provider backed by a webhook workflow.

    Example:
        async with httpx.AsyncClient() as client:
            provider = hackernews_provider(BridgeConfig(), client)
            hits = await provider.search("rust async runtime", limit=5)
    """

    def __init__(
        self,
        name: str,
        url: str,
        client: httpx.AsyncClient,
        api_key: str | None = None,
        timeout: float = 30.0,
        parse: Callable[[Any], list[ResearchHit]] | None = None,
        extra_payload: Callable[[str], dict[str, Any]] | None = None,
    ):
        self.name = name
        self.url = url
        self._client = client
        self._api_key = api_key
        self._timeout = timeout
        self._parse = parse or (lambda data: parse_generic_results(data, name))
        self._extra_payload = extra_payload

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-API-Key"] = self._api_key
        return headers

    async def search(self, query: str, limit: int = 10, session_id: str = "default") -> list[ResearchHit]:
        """
        Run one search.

        Raises:
            TransientProviderError: Worth retrying
            ProviderRequestError: Not worth retrying
        """
        if not query.strip():
            raise ProviderRequestError(f"{self.name}: query must not be empty")

        payload: dict[str, Any] = {"query": query, "sessionId": session_id, "limit": limit}
        if self._extra_payload:
            payload.update(self._extra_payload(query))

        try:
            response = await self._client.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.name}: request timed out") from e
        except httpx.RequestError as e:
            raise TransientProviderError(f"{self.name}: network error: {e}") from e

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderRequestError(f"{self.name}: response was not valid JSON") from e

        hits = self._parse(data)
        logger.debug(f"{self.name} returned {len(hits)} hits for {query!r}")
        return hits[:limit]

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Map HTTP errors onto the transient/terminal split."""
        status = response.status_code
        if status < 400:
            return
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise TransientProviderError(
                f"{self.name}: rate limit exceeded upstream",
                status_code=status,
                retry_after=retry_after,
            )
        if status >= 500:
            raise TransientProviderError(f"{self.name}: server error HTTP {status}", status_code=status)
        if status == 401:
            raise ProviderRequestError(f"{self.name}: invalid API key", status_code=status)
        if status == 404:
            raise ProviderRequestError(f"{self.name}: webhook not found at {self.url}", status_code=status)
        raise ProviderRequestError(f"{self.name}: request rejected with HTTP {status}", status_code=status)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def webhook_url(config: BridgeConfig, provider: ProviderConfig) -> str:
    parts = [config.base_url.rstrip("/"), config.webhook_path.strip("/"), provider.path.strip("/")]
    return "/".join(part for part in parts if part)


def hackernews_provider(config: BridgeConfig, client: httpx.AsyncClient) -> WebhookResearchProvider:
    settings = config.provider("hackernews")
    return WebhookResearchProvider(
        name="hackernews",
        url=webhook_url(config, settings),
        client=client,
        api_key=config.api_key,
        timeout=settings.request_timeout,
        parse=parse_hackernews_results,
    )


def reddit_provider(config: BridgeConfig, client: httpx.AsyncClient) -> WebhookResearchProvider:
    settings = config.provider("reddit")
    return WebhookResearchProvider(
        name="reddit",
        url=webhook_url(config, settings),
        client=client,
        api_key=config.api_key,
        timeout=settings.request_timeout,
        parse=parse_reddit_results,
        extra_payload=lambda query: {"subreddits": tech_subreddits(query)},
    )


def default_providers(config: BridgeConfig, client: httpx.AsyncClient) -> dict[str, ResearchProvider]:
    """The built-in hackernews and reddit providers."""
    return {
        "hackernews": hackernews_provider(config, client),
        "reddit": reddit_provider(config, client),
    }
