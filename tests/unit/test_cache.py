"""Unit tests for the cache backends and the CacheStore facade."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docrag.providers.cache.memory_cache import MemoryCacheBackend
from docrag.providers.cache.redis_cache import RedisCacheBackend
from docrag.services.cache_store import CacheStore, content_hash


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ======================================================================
# MemoryCacheBackend
# ======================================================================


class TestMemoryCacheBackend:
    @pytest.fixture()
    def clock(self) -> _FakeClock:
        return _FakeClock()

    @pytest.fixture()
    def backend(self, clock: _FakeClock) -> MemoryCacheBackend:
        return MemoryCacheBackend(max_size=3, timer=clock)

    @pytest.mark.asyncio
    async def test_get_missing_key_returns_none(self, backend: MemoryCacheBackend) -> None:
        assert await backend.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, backend: MemoryCacheBackend) -> None:
        await backend.set("key1", "value1", ttl=60)
        assert await backend.get("key1") == "value1"

    @pytest.mark.asyncio
    async def test_entry_expires_after_its_ttl(
        self, backend: MemoryCacheBackend, clock: _FakeClock
    ) -> None:
        await backend.set("short", "a", ttl=10)
        await backend.set("long", "b", ttl=100)
        clock.now += 11
        assert await backend.get("short") is None
        assert await backend.get("long") == "b"

    @pytest.mark.asyncio
    async def test_non_positive_ttl_deletes(self, backend: MemoryCacheBackend) -> None:
        await backend.set("key1", "value1", ttl=60)
        await backend.set("key1", "value2", ttl=0)
        assert await backend.get("key1") is None

    @pytest.mark.asyncio
    async def test_evicts_least_recently_used(self, backend: MemoryCacheBackend) -> None:
        for key in ("a", "b", "c"):
            await backend.set(key, key, ttl=60)
        await backend.get("a")
        await backend.set("d", "d", ttl=60)
        assert await backend.get("b") is None
        assert await backend.get("a") == "a"
        assert len(backend) == 3

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self, backend: MemoryCacheBackend) -> None:
        await backend.set("key1", "value1", ttl=60)
        assert await backend.delete("key1") is True
        assert await backend.delete("key1") is False

    @pytest.mark.asyncio
    async def test_delete_pattern(self) -> None:
        backend = MemoryCacheBackend(max_size=100)
        for key in ("search:1", "search:2", "rag:1", "doc:1"):
            await backend.set(key, "x", ttl=60)
        assert await backend.delete_pattern("search:*") == 2
        assert await backend.get("rag:1") == "x"
        assert await backend.get("search:1") is None

    @pytest.mark.asyncio
    async def test_get_many_and_set_many(self) -> None:
        backend = MemoryCacheBackend(max_size=100)
        await backend.set_many({"a": "1", "b": "2"}, ttl=60)
        assert await backend.get_many(["a", "missing", "b"]) == ["1", None, "2"]


# ======================================================================
# RedisCacheBackend (client mocked)
# ======================================================================


class TestRedisCacheBackend:
    @pytest.fixture()
    def client(self) -> MagicMock:
        client = MagicMock()
        client.get = AsyncMock(return_value="cached")
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_set_uses_expiry(self, client: MagicMock) -> None:
        backend = RedisCacheBackend(client=client)
        await backend.set("k", "v", ttl=30)
        client.set.assert_awaited_once_with("k", "v", ex=30)

    @pytest.mark.asyncio
    async def test_get_delegates(self, client: MagicMock) -> None:
        backend = RedisCacheBackend(client=client)
        assert await backend.get("k") == "cached"

    @pytest.mark.asyncio
    async def test_delete_pattern_scans_and_deletes(self, client: MagicMock) -> None:
        async def _scan(match: str, count: int):  # noqa: ANN202
            for key in ("search:1", "search:2"):
                yield key

        client.scan_iter = _scan
        client.delete = AsyncMock(return_value=2)
        backend = RedisCacheBackend(client=client)
        assert await backend.delete_pattern("search:*") == 2
        client.delete.assert_awaited_once_with("search:1", "search:2")

    @pytest.mark.asyncio
    async def test_ping_failure_returns_false(self, client: MagicMock) -> None:
        client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        backend = RedisCacheBackend(client=client)
        assert await backend.ping() is False

    @pytest.mark.asyncio
    async def test_close_closes_client(self, client: MagicMock) -> None:
        backend = RedisCacheBackend(client=client)
        await backend.close()
        client.aclose.assert_awaited_once()

    def test_backend_name(self, client: MagicMock) -> None:
        assert RedisCacheBackend(client=client).get_backend_name() == "redis"


# ======================================================================
# CacheStore
# ======================================================================


class TestCacheStore:
    @pytest.fixture()
    def store(self) -> CacheStore:
        return CacheStore(MemoryCacheBackend(max_size=100), max_key_length=60)

    @pytest.mark.asyncio
    async def test_round_trips_json_values(self, store: CacheStore) -> None:
        data = {"chunks": [1, 2, 3], "title": "Guide"}
        await store.set("rag:abc", data)
        assert await store.get("rag:abc") == data

    @pytest.mark.asyncio
    async def test_hit_and_miss_counters(self, store: CacheStore) -> None:
        await store.set("k", 1)
        await store.get("k")
        await store.get("missing")
        stats = store.stats()
        assert (stats.hits, stats.misses) == (1, 1)
        assert stats.hit_rate == 0.5
        assert stats.backend == "memory"

    def test_long_keys_are_hashed_with_prefix(self, store: CacheStore) -> None:
        key = "search:" + "x" * 200
        hashed = store.make_key(key)
        assert hashed.startswith("search:")
        assert len(hashed) == len("search:") + 16
        assert store.make_key(key) == hashed

    def test_short_keys_unchanged(self, store: CacheStore) -> None:
        assert store.make_key("doc:123") == "doc:123"

    @pytest.mark.asyncio
    async def test_embedding_keyed_by_model_and_text(self, store: CacheStore) -> None:
        await store.set_embedding("model-a", "hello", [0.1, 0.2])
        assert await store.get_embedding("model-a", "hello") == [0.1, 0.2]
        assert await store.get_embedding("model-b", "hello") is None
        assert store.embedding_key("m", "t") == "emb:" + content_hash("m", "t")

    @pytest.mark.asyncio
    async def test_batch_embeddings(self, store: CacheStore) -> None:
        await store.set_embeddings("m", ["a", "b"], [[1.0], [2.0]])
        assert await store.get_embeddings("m", ["a", "c", "b"]) == [[1.0], None, [2.0]]

    @pytest.mark.asyncio
    async def test_invalidate_document_clears_derived_entries(self, store: CacheStore) -> None:
        await store.set_document("d1", {"id": "d1"})
        await store.set_document("d2", {"id": "d2"})
        await store.set_search_results("q1", [{"id": "c1"}])
        await store.set_rag_context("q1", {"query": "q"})
        await store.set_embedding("m", "text", [0.5])

        await store.invalidate_document("d1")

        assert await store.get_document("d1") is None
        assert await store.get_search_results("q1") is None
        assert await store.get_rag_context("q1") is None
        assert await store.get_document("d2") == {"id": "d2"}
        assert await store.get_embedding("m", "text") == [0.5]

    @pytest.mark.asyncio
    async def test_clear_retrieval_keeps_documents(self, store: CacheStore) -> None:
        await store.set_document("d1", {"id": "d1"})
        await store.set_rag_context("q1", {"query": "q"})
        assert await store.clear_retrieval() == 1
        assert await store.get_document("d1") == {"id": "d1"}


class TestCacheStoreDegradation:
    """Backend failures are misses or no-ops, never exceptions."""

    @pytest.fixture()
    def broken_store(self) -> CacheStore:
        backend = MagicMock()
        backend.get = AsyncMock(side_effect=RedisConnectionError("down"))
        backend.set = AsyncMock(side_effect=RedisConnectionError("down"))
        backend.get_many = AsyncMock(side_effect=RedisConnectionError("down"))
        backend.set_many = AsyncMock(side_effect=RedisConnectionError("down"))
        backend.delete_pattern = AsyncMock(side_effect=RedisConnectionError("down"))
        backend.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        backend.get_backend_name.return_value = "redis"
        return CacheStore(backend)

    @pytest.mark.asyncio
    async def test_get_is_a_miss(self, broken_store: CacheStore) -> None:
        assert await broken_store.get("k") is None
        assert broken_store.stats().errors == 1

    @pytest.mark.asyncio
    async def test_set_returns_false(self, broken_store: CacheStore) -> None:
        assert await broken_store.set("k", 1) is False

    @pytest.mark.asyncio
    async def test_batch_get_is_all_misses(self, broken_store: CacheStore) -> None:
        assert await broken_store.get_embeddings("m", ["a", "b"]) == [None, None]

    @pytest.mark.asyncio
    async def test_invalidation_is_noop(self, broken_store: CacheStore) -> None:
        assert await broken_store.invalidate_document("d1") == 0

    @pytest.mark.asyncio
    async def test_health_check_false(self, broken_store: CacheStore) -> None:
        assert await broken_store.health_check() is False
