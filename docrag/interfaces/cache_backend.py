"""Abstract base class for key/value cache backends.

Backends store already-serialised string values; serialisation, key
prefixing and TTL classes live one level up in
:class:`~docrag.services.cache_store.CacheStore`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   MemoryCacheBackend: cachetools TLRUCache, per-item TTL, single process
#   RedisCacheBackend : redis.asyncio, shared between processes
# Located in: docrag/providers/cache/
class ICacheBackend(ABC):
    """Contract for string key/value stores with per-entry expiry."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value stored under *key*, or ``None`` if missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """Store *value* under *key* for *ttl* seconds.

        Parameters
        ----------
        key:
            Fully prefixed cache key.
        value:
            Serialised value.
        ttl:
            Time-to-live in seconds; must be positive.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove *key*. Returns ``True`` if it existed."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob *pattern* (``*``, ``?``, ``[...]``).

        Returns
        -------
        int
            Number of keys removed.
        """

    @abstractmethod
    async def get_many(self, keys: list[str]) -> list[str | None]:
        """Batch :meth:`get`; the result aligns positionally with *keys*."""

    @abstractmethod
    async def set_many(self, items: dict[str, str], ttl: int) -> None:
        """Batch :meth:`set` with a shared TTL."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return ``True`` if the backend is reachable."""

    @abstractmethod
    def get_backend_name(self) -> str:
        """Short name used in logs and stats (e.g. ``"memory"``)."""

    async def close(self) -> None:
        """Release any connections held by the backend."""
