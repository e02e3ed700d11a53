"""Read-through cache for console queries.

Entries are keyed by a query name plus its parameters. Mutations invalidate
by name (or name prefix) so the next read goes back to the backend. Fetches
are not de-duplicated or cancelled: if two reads for the same key overlap,
whichever finishes last is what the cache keeps.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

CacheKey = Tuple[str, Tuple[Tuple[str, Hashable], ...]]


def make_key(name: str, params: Optional[Mapping[str, Any]] = None) -> CacheKey:
    items = tuple(sorted((str(key), _freeze(value)) for key, value in (params or {}).items()))
    return (name, items)


def _freeze(value: Any) -> Hashable:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(item) for item in value)
    if isinstance(value, Mapping):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    return value


@dataclass
class CacheEntry:
    value: Any
    fetched_at: float


class QueryCache:
    """Thread-safe read-through cache."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get_or_fetch(
        self,
        key: CacheKey,
        fetcher: Callable[[], T],
        *,
        refresh: bool = False,
    ) -> T:
        if not refresh:
            with self._lock:
                entry = self._entries.get(key)
            if entry is not None:
                return entry.value
        # Fetch outside the lock; overlapping fetches race, last write wins.
        value = fetcher()
        with self._lock:
            self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())
        return value

    def peek(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def invalidate(self, name: str, *, prefix: bool = False) -> int:
        """Drop entries whose query name matches ``name``; returns the count."""

        with self._lock:
            doomed = [
                key
                for key in self._entries
                if key[0] == name or (prefix and key[0].startswith(name))
            ]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d cached queries for %s", len(doomed), name)
        return len(doomed)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_query_cache: Optional[QueryCache] = None


def get_query_cache() -> QueryCache:
    """Return the process-wide query cache."""

    global _query_cache
    if _query_cache is None:
        _query_cache = QueryCache()
    return _query_cache


def set_query_cache(cache: Optional[QueryCache]) -> None:
    """Override the global query cache (primarily for testing)."""

    global _query_cache
    _query_cache = cache


__all__ = [
    "CacheEntry",
    "QueryCache",
    "make_key",
    "get_query_cache",
    "set_query_cache",
]
