"""Component wiring.

Constructs every provider and service from :class:`Settings` with explicit
dependency injection, registers the ``process_document`` job processor
and owns the start/close lifecycle.  Used by the CLI and by anything that
embeds docrag::

    async with build_container(settings) as container:
        await container.documents.upload("notes.md", data)
        result = await container.retrieval.retrieve("what is x?")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import structlog

from docrag.config.settings import Settings
from docrag.interfaces.cache_backend import ICacheBackend
from docrag.interfaces.embedding_provider import IEmbeddingProvider
from docrag.interfaces.object_storage import IObjectStorage
from docrag.models.retrieval import SearchOptions
from docrag.pipeline.job_queue import JobQueue
from docrag.pipeline.progress_tracker import ProgressTracker
from docrag.pipeline.worker_pool import WorkerPool
from docrag.providers.cache.memory_cache import MemoryCacheBackend
from docrag.providers.cache.redis_cache import RedisCacheBackend
from docrag.providers.database.connection_pool import ConnectionPool
from docrag.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from docrag.providers.storage.local_storage import LocalObjectStorage
from docrag.services.cache_store import CacheStore
from docrag.services.document_service import PROCESS_DOCUMENT_JOB, DocumentService
from docrag.services.embedding_gateway import EmbeddingGateway
from docrag.services.ingestion.chunker import TextChunker, build_token_counter
from docrag.services.ingestion.ingestion_service import DocumentProcessor
from docrag.services.retrieval_engine import RetrievalEngine
from docrag.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)


@dataclass
class Container:
    """Every constructed component, by role."""

    settings: Settings
    pool: ConnectionPool
    cache: CacheStore
    storage: IObjectStorage
    embedding_provider: IEmbeddingProvider
    gateway: EmbeddingGateway
    worker_pool: WorkerPool
    queue: JobQueue
    tracker: ProgressTracker
    processor: DocumentProcessor
    documents: DocumentService
    retrieval: RetrievalEngine

    async def start(self, run_queue: bool = True) -> None:
        """Open the pool and (optionally) start consuming jobs."""
        await self.pool.initialize()
        if run_queue:
            await self.queue.start()
        logger.info(
            "container_started",
            environment=self.settings.app_env,
            cache=self.cache.stats().backend,
            embedding=self.embedding_provider.get_provider_name(),
            queue_running=self.queue.running,
        )

    async def close(self) -> None:
        """Stop the queue, then release workers, cache and connections."""
        await self.queue.stop()
        await self.worker_pool.shutdown()
        await self.cache.close()
        await self.pool.close()
        logger.info("container_closed")

    async def health(self) -> dict[str, Any]:
        checks = await self.retrieval.health_check()
        checks["queue"] = self.queue.running
        return checks

    async def __aenter__(self) -> Container:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def _build_cache_backend(settings: Settings) -> ICacheBackend:
    if settings.cache_backend == "redis":
        return RedisCacheBackend(url=settings.cache_redis_url)
    return MemoryCacheBackend(max_size=settings.cache_max_size)


def build_container(
    settings: Settings,
    embedding_provider: IEmbeddingProvider | None = None,
    cache_backend: ICacheBackend | None = None,
    storage: IObjectStorage | None = None,
) -> Container:
    """Construct all components from *settings*.

    Parameters
    ----------
    settings:
        Application settings.
    embedding_provider, cache_backend, storage:
        Optional replacements for the configured providers (tests, embedding
        servers other than OpenAI).
    """
    pool = ConnectionPool(settings.database_path, **settings.pool_options())
    cache = CacheStore(
        backend=cache_backend or _build_cache_backend(settings),
        default_ttl=settings.cache_default_ttl,
        embedding_ttl=settings.cache_embedding_ttl,
        search_ttl=settings.cache_search_ttl,
        document_ttl=settings.cache_document_ttl,
        max_key_length=settings.cache_max_key_length,
    )
    storage = storage or LocalObjectStorage(settings.storage_root)
    embedding_provider = embedding_provider or OpenAIEmbeddingProvider(settings=settings)
    gateway = EmbeddingGateway(
        provider=embedding_provider,
        cache=cache,
        dimension=settings.embedding_dimension,
        batch_size=settings.embedding_batch_size,
        batch_delay=settings.embedding_batch_delay,
        call_timeout=settings.embedding_call_timeout,
        batch_timeout=settings.embedding_batch_timeout,
        retry_policy=RetryPolicy(
            max_attempts=settings.embedding_max_attempts,
            base_delay=settings.embedding_retry_delay,
            name="embedding",
        ),
    )
    worker_pool = WorkerPool(
        max_workers=settings.worker_max_workers,
        kind=settings.worker_kind,
        default_timeout=settings.worker_task_timeout,
        result_ttl=settings.worker_result_ttl,
    )
    queue = JobQueue(
        concurrency=settings.queue_concurrency,
        poll_interval=settings.queue_poll_interval,
        retry_delay=settings.queue_retry_delay,
        max_retry_delay=settings.queue_max_retry_delay,
        max_attempts=settings.queue_max_attempts,
        job_timeout=settings.queue_job_timeout,
        job_ttl=settings.queue_job_ttl,
        cleanup_interval=settings.queue_cleanup_interval,
        starvation_threshold=settings.queue_starvation_threshold,
    )
    tracker = ProgressTracker()
    chunker = TextChunker(
        chunk_size=settings.chunking_size,
        overlap=settings.chunking_overlap,
        min_tokens=settings.chunking_min_tokens,
        counter=build_token_counter(settings.chunking_tokenizer, settings.chunking_encoding),
    )
    processor = DocumentProcessor(
        pool=pool,
        gateway=gateway,
        cache=cache,
        chunker=chunker,
        tracker=tracker,
        worker_pool=worker_pool,
        offload_chunking=settings.chunking_offload,
        insert_batch_size=settings.ingestion_insert_batch_size,
        insert_batch_delay=settings.ingestion_insert_batch_delay,
        stuck_after=settings.ingestion_stuck_after,
        tokenizer=settings.chunking_tokenizer,
        encoding=settings.chunking_encoding,
    )
    documents = DocumentService(
        pool=pool,
        cache=cache,
        storage=storage,
        queue=queue,
        processor=processor,
        tracker=tracker,
        max_upload_bytes=settings.ingestion_max_upload_bytes,
        min_content_chars=settings.ingestion_min_content_chars,
        allowed_extensions=settings.ingestion_allowed_extensions,
    )
    retrieval = RetrievalEngine(
        pool=pool,
        gateway=gateway,
        cache=cache,
        worker_pool=worker_pool,
        offload_ranking=settings.retrieval_offload_ranking,
        default_options=SearchOptions(
            similarity_threshold=settings.retrieval_similarity_threshold,
            max_chunks=settings.retrieval_max_chunks,
            min_chunk_length=settings.retrieval_min_chunk_length,
            overfetch_factor=settings.retrieval_overfetch_factor,
        ),
        batch_size=settings.retrieval_batch_size,
    )

    queue.register_processor(PROCESS_DOCUMENT_JOB, documents.process_document_job)
    queue.add_failure_listener(documents.on_job_failed)

    return Container(
        settings=settings,
        pool=pool,
        cache=cache,
        storage=storage,
        embedding_provider=embedding_provider,
        gateway=gateway,
        worker_pool=worker_pool,
        queue=queue,
        tracker=tracker,
        processor=processor,
        documents=documents,
        retrieval=retrieval,
    )
