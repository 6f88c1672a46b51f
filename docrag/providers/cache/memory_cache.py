"""In-memory cache backend using cachetools.TLRUCache.

Fast, process-local cache suitable for development and single-process
deployments.  ``TLRUCache`` gives each entry its own expiry, so the TTL
classes (embeddings for days, search results for minutes) are honoured
without separate caches.
"""

from __future__ import annotations

import fnmatch
import time
from collections.abc import Callable

import structlog
from cachetools import TLRUCache

from docrag.interfaces.cache_backend import ICacheBackend

logger = structlog.get_logger(logger_name=__name__)


def _entry_expiry(_key: str, value: tuple[str, float], now: float) -> float:
    # Values are stored as (payload, ttl); expiry is computed on insert.
    return now + value[1]


class MemoryCacheBackend(ICacheBackend):
    """In-memory per-item TTL cache backed by ``cachetools.TLRUCache``.

    Parameters
    ----------
    max_size:
        Maximum number of entries before the least-recently-used entry
        is evicted.
    timer:
        Monotonic clock; tests inject a fake one to expire entries.
    """

    def __init__(self, max_size: int = 10_000, timer: Callable[[], float] = time.monotonic) -> None:
        self._cache: TLRUCache[str, tuple[str, float]] = TLRUCache(
            maxsize=max_size, ttu=_entry_expiry, timer=timer
        )

    # ------------------------------------------------------------------
    # ICacheBackend implementation
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        entry = self._cache.get(key)
        if entry is None:
            logger.debug("cache_miss", key=key)
            return None
        logger.debug("cache_hit", key=key)
        return entry[0]

    async def set(self, key: str, value: str, ttl: int) -> None:
        if ttl <= 0:
            self._cache.pop(key, None)
            return
        self._cache[key] = (value, float(ttl))
        logger.debug("cache_set", key=key, ttl=ttl)

    async def delete(self, key: str) -> bool:
        existed = self._cache.pop(key, None) is not None
        logger.debug("cache_delete", key=key, existed=existed)
        return existed

    async def delete_pattern(self, pattern: str) -> int:
        self._cache.expire()
        matched = [k for k in list(self._cache.keys()) if fnmatch.fnmatchcase(k, pattern)]
        for key in matched:
            self._cache.pop(key, None)
        logger.debug("cache_delete_pattern", pattern=pattern, deleted=len(matched))
        return len(matched)

    async def get_many(self, keys: list[str]) -> list[str | None]:
        return [await self.get(key) for key in keys]

    async def set_many(self, items: dict[str, str], ttl: int) -> None:
        for key, value in items.items():
            await self.set(key, value, ttl)

    async def ping(self) -> bool:
        return True

    def get_backend_name(self) -> str:
        return "memory"

    def __len__(self) -> int:
        self._cache.expire()
        return len(self._cache)
