"""
In-process query cache keyed by tuples.

Keys look like ("quotes", filters) or ("quote", quote_id). Invalidating a
prefix drops every key whose leading elements equal the prefix, so
invalidate(("quotes",)) clears every quote list regardless of filters.
"""

import logging
import time
from typing import Any, Callable, Hashable

from utils import get_cache_config

logger = logging.getLogger(__name__)

CacheKey = tuple[Hashable, ...]


def _freeze(value: Any) -> Hashable:
    """Turn dicts/lists into hashable tuples so filter objects can be keys."""
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple, set)):
        return tuple(_freeze(v) for v in value)
    if hasattr(value, "__dataclass_fields__"):
        return (type(value).__name__, _freeze(vars(value)))
    return value


def make_key(*parts: Any) -> CacheKey:
    """Build a cache key from arbitrary parts."""
    return tuple(_freeze(p) for p in parts)


class QueryCache:
    """TTL cache with prefix invalidation."""

    def __init__(self, ttl_seconds: float | None = None, enabled: bool | None = None):
        config = get_cache_config()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.get("ttl_seconds", 300)
        self.enabled = enabled if enabled is not None else config.get("enabled", True)
        self._entries: dict[CacheKey, tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not self._expired(entry[0])

    def _expired(self, stored_at: float) -> bool:
        return time.monotonic() - stored_at > self.ttl_seconds

    def get_or_fetch(self, key: CacheKey, fetch: Callable[[], Any]) -> Any:
        """Return the cached value for key, calling fetch on a miss or expiry."""
        if self.enabled:
            entry = self._entries.get(key)
            if entry is not None and not self._expired(entry[0]):
                logger.debug(f"Cache hit: {key[0]}")
                return entry[1]

        value = fetch()
        if self.enabled:
            self._entries[key] = (time.monotonic(), value)
        return value

    def invalidate(self, prefix: CacheKey) -> int:
        """Drop every key starting with prefix. Returns the number dropped."""
        prefix = tuple(prefix)
        doomed = [k for k in self._entries if k[: len(prefix)] == prefix]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries for {prefix}")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
