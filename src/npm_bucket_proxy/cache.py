"""Read-through edge cache for proxy responses."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from constants import Constants

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with TTL."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


@dataclass
class CachedResponse:
    """A fully built response as held by the edge cache."""

    status: int
    headers: Dict[str, str]
    body: bytes = b""
    created_at: float = field(default_factory=time.time)

    @property
    def etag(self) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == "etag":
                return value
        return None


def cache_key(method: str, url: str) -> str:
    """Key an entry by method and normalized URL; HEAD and GET never share one."""
    return f"{method.upper()} {url}"


class EdgeCache:
    """Interface of an edge cache provider.

    Providers must tolerate concurrent lookups and stores. Callers treat any
    exception from either operation as a miss or a dropped store.
    """

    async def lookup(self, key: str) -> Optional[CachedResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def store(self, key: str, response: CachedResponse) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def max_entry_bytes(self) -> Optional[int]:
        """Largest body worth buffering for a store, or None for no limit."""
        return None

    def stats(self) -> Dict[str, Any]:
        return {}


class MemoryEdgeCache(EdgeCache):
    """TTL cache of built responses kept in process memory.

    Bounded by entry count and total body bytes; oldest entries are evicted
    first.
    """

    def __init__(
        self,
        default_ttl: int = Constants.CACHE_TTL_SEC,
        max_entries: int = Constants.CACHE_MAX_ENTRIES,
        max_bytes: int = Constants.CACHE_MAX_BYTES,
    ):
        """Initialize the response cache.

        Args:
            default_ttl: Default time-to-live in seconds.
            max_entries: Maximum number of entries kept.
            max_bytes: Maximum total body bytes kept.
        """
        self._default_ttl = default_ttl
        self._cache: Dict[str, CacheEntry[CachedResponse]] = {}
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._current_bytes = 0
        self._last_cleanup = time.time()
        self._cleanup_interval = Constants.CACHE_CLEANUP_INTERVAL_SEC
        self._hits = 0
        self._misses = 0

    def max_entry_bytes(self) -> int:
        # Don't cache responses larger than 10% of max cache size
        return self._max_bytes // 10

    async def lookup(self, key: str) -> Optional[CachedResponse]:
        return self.get(key)

    async def store(self, key: str, response: CachedResponse) -> None:
        self.set(key, response)

    def get(self, key: str) -> Optional[CachedResponse]:
        """Get a cached response.

        Args:
            key: Cache key (see :func:`cache_key`).

        Returns:
            The cached response or None if not found/expired.
        """
        self._maybe_cleanup()

        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired():
            self._remove_entry(key)
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    def set(self, key: str, response: CachedResponse, ttl: Optional[int] = None) -> None:
        """Cache a response.

        Args:
            key: Cache key.
            response: Response to cache.
            ttl: Optional TTL override in seconds.
        """
        self._maybe_cleanup()

        body_size = len(response.body)
        if body_size > self.max_entry_bytes():
            return

        # Remove existing entry if present
        if key in self._cache:
            self._remove_entry(key)

        # Evict if needed to make room
        while self._current_bytes + body_size > self._max_bytes and self._cache:
            self._evict_oldest(1)

        effective_ttl = ttl if ttl is not None else self._default_ttl
        expires_at = time.time() + effective_ttl

        self._cache[key] = CacheEntry(value=response, expires_at=expires_at)
        self._current_bytes += body_size

        # Evict if over entry limit
        if len(self._cache) > self._max_entries:
            self._evict_oldest(max(1, self._max_entries // 10))

    def invalidate(self, key: str) -> None:
        """Invalidate a cached response."""
        self._remove_entry(key)

    def clear(self) -> None:
        """Clear all cached responses."""
        self._cache.clear()
        self._current_bytes = 0

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        expired_count = sum(1 for e in self._cache.values() if e.is_expired())
        return {
            "total_entries": len(self._cache),
            "expired_entries": expired_count,
            "active_entries": len(self._cache) - expired_count,
            "current_bytes": self._current_bytes,
            "max_bytes": self._max_bytes,
            "max_entries": self._max_entries,
            "default_ttl": self._default_ttl,
            "hits": self._hits,
            "misses": self._misses,
        }

    def _remove_entry(self, key: str) -> None:
        """Remove an entry and update byte count."""
        entry = self._cache.pop(key, None)
        if entry:
            self._current_bytes -= len(entry.value.body)

    def _maybe_cleanup(self) -> None:
        """Run cleanup if enough time has passed."""
        now = time.time()
        if now - self._last_cleanup > self._cleanup_interval:
            self._cleanup()
            self._last_cleanup = now

    def _cleanup(self) -> None:
        """Remove expired entries."""
        keys_to_remove = [key for key, entry in self._cache.items() if entry.is_expired()]
        for key in keys_to_remove:
            self._remove_entry(key)

    def _evict_oldest(self, count: int) -> None:
        """Evict the oldest entries."""
        sorted_keys = sorted(self._cache.keys(), key=lambda k: self._cache[k].created_at)
        for key in sorted_keys[:count]:
            self._remove_entry(key)
