"""Redis cache backend using ``redis.asyncio``.

Shares the cache between processes (API workers, queue workers).  Batch
reads and writes go through a single pipeline round trip; pattern
invalidation walks the keyspace with ``SCAN`` so it never blocks the
server the way ``KEYS`` would.
"""

from __future__ import annotations

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from docrag.interfaces.cache_backend import ICacheBackend

logger = structlog.get_logger(logger_name=__name__)

_DELETE_BATCH = 500


class RedisCacheBackend(ICacheBackend):
    """Cache backend over a Redis server.

    Errors from the client propagate; :class:`~docrag.services.cache_store.CacheStore`
    turns them into misses.

    Parameters
    ----------
    url:
        Redis connection URL, e.g. ``redis://localhost:6379/0``.
    client:
        Pre-built client (tests pass a mock); when given, *url* is ignored.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", client: Redis | None = None) -> None:
        self._client: Redis = client or Redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._client.set(key, value, ex=max(1, int(ttl)))

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=_DELETE_BATCH):
            batch.append(key)
            if len(batch) >= _DELETE_BATCH:
                deleted += await self._client.delete(*batch)
                batch.clear()
        if batch:
            deleted += await self._client.delete(*batch)
        logger.debug("redis_delete_pattern", pattern=pattern, deleted=deleted)
        return deleted

    async def get_many(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        async with self._client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.get(key)
            return list(await pipe.execute())

    async def set_many(self, items: dict[str, str], ttl: int) -> None:
        if not items:
            return
        async with self._client.pipeline(transaction=False) as pipe:
            for key, value in items.items():
                pipe.set(key, value, ex=max(1, int(ttl)))
            await pipe.execute()

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    def get_backend_name(self) -> str:
        return "redis"

    async def close(self) -> None:
        await self._client.aclose()
