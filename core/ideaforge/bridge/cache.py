"""
Response Cache - In-memory TTL cache for research results.

Entries expire lazily: a read past `created_at + ttl` evicts the entry and
reports a miss. `sweep()` removes every expired entry in one pass.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: Hashable
    value: Any
    created_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now > self.created_at + self.ttl


class ResponseCache:
    """
    TTL cache keyed by (provider, normalised query).

    Concurrent populates of the same key are serialised by a per-key lock,
    so a burst of identical misses issues a single upstream call.
    """

    def __init__(self, default_ttl: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        self._key_locks: dict[Hashable, asyncio.Lock] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Any | None:
        """Return the live value for key, or None."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._misses += 1
            logger.debug(f"Cache entry expired: {key}")
            return None
        self._hits += 1
        return entry.value

    def put(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )

    def invalidate(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        """Per-key lock guarding the populate path."""
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    async def get_or_populate(
        self,
        key: Hashable,
        populate: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> tuple[Any, bool]:
        """
        Return (value, was_cached), calling populate at most once per miss.
        """
        value = self.get(key)
        if value is not None:
            return value, True

        async with self.lock_for(key):
            # Another waiter may have populated while we queued
            value = self.get(key)
            if value is not None:
                return value, True
            value = await populate()
            self.put(key, value, ttl)
            return value, False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def get_stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
        }
