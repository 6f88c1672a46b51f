"""Shared pytest fixtures for the docrag test suite."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from docrag.config.settings import Settings
from docrag.container import Container, build_container
from docrag.providers.cache.memory_cache import MemoryCacheBackend
from docrag.providers.database.connection_pool import ConnectionPool
from docrag.services.cache_store import CacheStore
from docrag.services.embedding_gateway import EmbeddingGateway
from docrag.utils.retry import RetryPolicy
from tests.fakes import EMBEDDING_DIM, MockEmbeddingProvider, no_sleep


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings tuned for fast, deterministic tests (no .env, no delays)."""
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "docrag.db"),
        storage_root=str(tmp_path / "uploads"),
        pool_max_connections=4,
        pool_retry_delay=0.01,
        chunking_tokenizer="whitespace",
        embedding_dimension=EMBEDDING_DIM,
        embedding_batch_delay=0.0,
        embedding_retry_delay=0.01,
        ingestion_insert_batch_delay=0.0,
        queue_poll_interval=0.01,
        queue_retry_delay=0.01,
        worker_kind="thread",
        worker_max_workers=2,
    )


@pytest.fixture
def embedding_provider() -> MockEmbeddingProvider:
    return MockEmbeddingProvider()


@pytest.fixture
def cache_store() -> CacheStore:
    return CacheStore(MemoryCacheBackend(max_size=1000))


@pytest_asyncio.fixture
async def pool(tmp_path: Path) -> AsyncIterator[ConnectionPool]:
    connection_pool = ConnectionPool(tmp_path / "pool.db", max_connections=4, retry_delay=0.01)
    await connection_pool.initialize()
    yield connection_pool
    await connection_pool.close()


@pytest.fixture
def gateway(embedding_provider: MockEmbeddingProvider, cache_store: CacheStore) -> EmbeddingGateway:
    return EmbeddingGateway(
        provider=embedding_provider,
        cache=cache_store,
        batch_delay=0.0,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, sleep=no_sleep),
        sleep=no_sleep,
    )


@pytest_asyncio.fixture
async def container(
    settings: Settings, embedding_provider: MockEmbeddingProvider
) -> AsyncIterator[Container]:
    """Fully wired container with the job queue stopped."""
    built = build_container(settings, embedding_provider=embedding_provider)
    await built.start(run_queue=False)
    yield built
    await built.close()
