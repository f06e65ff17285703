"""
Process-lifetime cache for HubSpot lookups.

Entries are keyed by a cache name plus the call arguments and expire after a
per-entry revalidation interval, or earlier when one of their tags is revalidated.
Staleness up to the interval is accepted. Expired entries are evicted on the
next miss, so keys that are never requested again do not accumulate.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def make_key(name: str, args: Optional[Dict[str, Any]] = None) -> CacheKey:
    return name, repr(_freeze(args or {}))


def _fresh_copy(value: Any) -> Any:
    if isinstance(value, list):
        return list(value)
    return value


class TTLCache:
    """In-memory cache: {key: {"value": ..., "cached_at": float, "ttl": int, "tags": set}}"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[CacheKey, Dict[str, Any]] = {}
        self._pending: Dict[CacheKey, "asyncio.Future[Any]"] = {}

    def get(self, name: str, args: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        entry = self._entries.get(make_key(name, args))
        if entry is None:
            return None
        if self._clock() - entry["cached_at"] >= entry["ttl"]:
            return None
        return _fresh_copy(entry["value"])

    async def get_or_set(
        self,
        name: str,
        args: Optional[Dict[str, Any]],
        compute: Callable[[], Awaitable[Any]],
        ttl: int,
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value for (name, args), computing it on a miss.

        Concurrent misses on the same key share one computation.
        """
        key = make_key(name, args)
        entry = self._entries.get(key)
        now = self._clock()
        if entry is not None and now - entry["cached_at"] < entry["ttl"]:
            return _fresh_copy(entry["value"])

        pending = self._pending.get(key)
        if pending is None:
            self._evict_expired(now)
            pending = asyncio.ensure_future(self._fill(key, compute, ttl, tags))
            self._pending[key] = pending
            pending.add_done_callback(lambda fut: self._pending.pop(key, None))
        value = await asyncio.shield(pending)
        return _fresh_copy(value)

    async def _fill(self, key: CacheKey, compute: Callable[[], Awaitable[Any]], ttl: int, tags: Iterable[str]) -> Any:
        value = await compute()
        self._entries[key] = {
            "value": value,
            "cached_at": self._clock(),
            "ttl": ttl,
            "tags": set(tags),
        }
        return value

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now - entry["cached_at"] >= entry["ttl"]]
        for key in expired:
            del self._entries[key]

    def revalidate_tag(self, tag: str) -> int:
        """Drop every entry carrying tag. Returns the number of entries removed."""
        stale = [key for key, entry in self._entries.items() if tag in entry["tags"]]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info(f"Revalidated cache tag '{tag}' ({len(stale)} entries)")
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()


_default_cache = TTLCache()


def get_default_cache() -> TTLCache:
    return _default_cache


def revalidate_tag(tag: str) -> int:
    return _default_cache.revalidate_tag(tag)
