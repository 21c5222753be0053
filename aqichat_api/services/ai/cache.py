"""
Short-lived caches for tool results

Entries expire after a fixed TTL and are replaced wholesale on write.
Callers read, fetch upstream on a miss, then put the result back.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

from aqichat_core.config import settings
from aqichat_core.logger import logger


@dataclass(frozen=True)
class CacheEntry:
    """One cached value and the clock reading when it was stored"""
    key: Hashable
    value: Any
    stored_at: float


class TTLCache:
    """
    Read-through TTL cache without an upstream reference

    A read misses when no entry exists or the entry is at least
    ttl_seconds old. Nothing is evicted except by that check.
    """

    def __init__(
        self,
        ttl_seconds: float,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None on a miss"""
        entry = self._entries.get(key)
        if entry is None:
            logger.debug(f"{self.name} miss: {key}")
            return None

        if self._clock() - entry.stored_at >= self.ttl_seconds:
            logger.debug(f"{self.name} expired: {key}")
            return None

        logger.debug(f"{self.name} hit: {key}")
        return entry.value

    def put(self, key: Hashable, value: Any) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ToolCaches:
    """The two process-wide caches shared by every chat request"""

    def __init__(
        self,
        top_cities_ttl: float = None,
        city_ttl: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.top_cities = TTLCache(
            top_cities_ttl if top_cities_ttl is not None else settings.top_cities_cache_ttl,
            name="top-cities cache",
            clock=clock,
        )
        self.city = TTLCache(
            city_ttl if city_ttl is not None else settings.city_cache_ttl,
            name="city cache",
            clock=clock,
        )

    def clear(self) -> None:
        self.top_cities.clear()
        self.city.clear()
