"""
Short-lived in-memory cache in front of remote calls.

Each named sub-cache has its own TTL and is bounded to a fixed entry count;
on overflow the oldest inserted key is evicted. Hits and misses are counted
for the statistics endpoint. Nothing here is durable.
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from identity_cache.config import settings
from identity_cache.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SEARCH_CACHE = "search"
PROFILE_CACHE = "profile"
CHANNEL_METADATA_CACHE = "channel_metadata"
CONVERSATION_MAPPING_CACHE = "conversation_mapping"
CHANNEL_MEMBERS_CACHE = "channel_members"


@dataclass(slots=True)
class _SubCache:
    ttl_seconds: float
    entries: OrderedDict[str, tuple[float, Any]] = field(default_factory=OrderedDict)


class ResponseCache:
    def __init__(
        self,
        ttl_seconds: float | None = None,
        profile_ttl_seconds: float | None = None,
        max_entries: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        ttl = settings.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        profile_ttl = (
            settings.PROFILE_CACHE_TTL_SECONDS if profile_ttl_seconds is None else profile_ttl_seconds
        )
        self.max_entries = settings.CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._clock = clock
        self._caches: dict[str, _SubCache] = {
            SEARCH_CACHE: _SubCache(ttl),
            PROFILE_CACHE: _SubCache(profile_ttl),
            CHANNEL_METADATA_CACHE: _SubCache(ttl),
            CONVERSATION_MAPPING_CACHE: _SubCache(ttl),
            CHANNEL_MEMBERS_CACHE: _SubCache(ttl),
        }
        self.hits = 0
        self.misses = 0

    def _cache(self, cache_name: str) -> _SubCache:
        try:
            return self._caches[cache_name]
        except KeyError:
            raise ValueError(f"Unknown cache '{cache_name}'") from None

    def get(self, cache_name: str, key: str) -> Any | None:
        cache = self._cache(cache_name)
        entry = cache.entries.get(key)
        if entry is not None:
            stored_at, value = entry
            if self._clock() - stored_at < cache.ttl_seconds:
                self.hits += 1
                return value
            del cache.entries[key]

        self.misses += 1
        return None

    def set(self, cache_name: str, key: str, value: Any) -> None:
        cache = self._cache(cache_name)
        # Re-setting a key does not refresh its eviction position
        cache.entries[key] = (self._clock(), value)
        while len(cache.entries) > self.max_entries:
            evicted, _ = cache.entries.popitem(last=False)
            logger.debug("Response cache eviction", cache=cache_name, key=evicted)

    def clear(self, cache_name: str | None = None) -> None:
        targets = [self._cache(cache_name)] if cache_name else self._caches.values()
        for cache in targets:
            cache.entries.clear()

    def efficiency(self) -> float:
        """Hit ratio in percent; 0 before any lookups."""
        total = self.hits + self.misses
        return round(self.hits / total * 100, 1) if total else 0.0

    def stats(self) -> dict[str, Any]:
        return {
            "sizes": {name: len(cache.entries) for name, cache in self._caches.items()},
            "hits": self.hits,
            "misses": self.misses,
            "efficiency_percent": self.efficiency(),
        }
