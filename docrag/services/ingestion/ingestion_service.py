"""Document processing: chunk → embed → validate → store.

Orchestrates the ingestion of one stored document into embedded chunks.
Dependencies are injected via the constructor.

# ─── PROCESSING FLOW ──────────────────────────────────────────────────
#
#   load document ─→ chunk (inline or in the WorkerPool)
#                 ─→ embed in batches via EmbeddingGateway (progress 20-70%)
#                 ─→ validate, dropping invalid chunks, renumber 0..n-1
#                 ─→ replace the document's chunks in insert batches
#                 ─→ processed=True, chunk_count, processing_time_ms
#                 ─→ invalidate the document's cache entries
#
# Runs for one document are serialised by a per-document lock, which
# reset_document also takes, so a reset never interleaves with a run.
#
# On any failure the partial chunks are removed, the document is marked
# processed=False with error_message set, and the error is re-raised as
# IngestionError so the JobQueue can retry the job.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import time
import uuid
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from docrag.models.document import Chunk, Document, ProcessingStatus, TextChunk
from docrag.pipeline.progress_tracker import ProgressTracker
from docrag.pipeline.worker_pool import WorkerPool
from docrag.providers.database import records, schema
from docrag.providers.database.connection_pool import ConnectionPool
from docrag.services.cache_store import CacheStore
from docrag.services.embedding_gateway import EmbeddingGateway
from docrag.services.ingestion.chunk_validator import validate_chunk, validate_stored_chunk
from docrag.services.ingestion.chunker import TextChunker
from docrag.utils.errors import DocRagError, DocumentNotFoundError, IngestionError

logger = structlog.get_logger(logger_name=__name__)

_CLEANUP_PAGE = 500


class DocumentProcessor:
    """Turns stored documents into persisted, embedded chunks.

    Parameters
    ----------
    pool:
        Connection pool to the document store.
    gateway:
        Embedding gateway (cached, batched, retried).
    cache:
        Cache store; the document's entries are invalidated after changes.
    chunker:
        Chunker used inline, and whose settings are sent to the worker pool.
    tracker:
        Optional progress tracker.
    worker_pool:
        When given together with ``offload_chunking=True``, chunking runs
        in a worker context instead of on the event loop.
    insert_batch_size, insert_batch_delay:
        Chunk rows per insert and the pause between inserts.
    stuck_after:
        Seconds after upload an unprocessed document counts as stuck.
    tokenizer, encoding:
        Token counter settings forwarded to worker-side chunking.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        gateway: EmbeddingGateway,
        cache: CacheStore,
        chunker: TextChunker,
        tracker: ProgressTracker | None = None,
        worker_pool: WorkerPool | None = None,
        offload_chunking: bool = False,
        insert_batch_size: int = 5,
        insert_batch_delay: float = 0.5,
        stuck_after: float = 600.0,
        tokenizer: str = "tiktoken",
        encoding: str = "cl100k_base",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._pool = pool
        self._gateway = gateway
        self._cache = cache
        self._chunker = chunker
        self._tracker = tracker
        self._worker_pool = worker_pool
        self._offload = offload_chunking and worker_pool is not None
        self._insert_batch_size = max(1, insert_batch_size)
        self._insert_batch_delay = insert_batch_delay
        self._stuck_after = stuck_after
        self._tokenizer = tokenizer
        self._encoding = encoding
        self._sleep = sleep
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, document_id: str) -> Document:
        """Chunk, embed and persist one document.

        Returns
        -------
        Document
            The document as stored after processing.

        Raises
        ------
        DocumentNotFoundError
            If *document_id* does not exist (not retryable).
        IngestionError
            For any other failure, after the document is marked failed.
        """
        async with self._lock_for(document_id):
            return await self._process_locked(document_id)

    async def _process_locked(self, document_id: str) -> Document:
        document = await self.get_document(document_id)
        started = time.perf_counter()
        log = logger.bind(document_id=document_id, title=document.title)
        log.info("document_processing_started", chars=len(document.content))
        await self._progress(document_id, ProcessingStatus.PROCESSING, 5, "Loading document")

        try:
            pieces = await self._chunk(document.content)
            if not pieces:
                raise IngestionError("Document produced no chunks", provider_name="ingestion")
            await self._progress(
                document_id, ProcessingStatus.CHUNKING, 20,
                f"Split into {len(pieces)} chunks", total_chunks=len(pieces),
            )

            async def _on_embed_progress(done: int, total: int) -> None:
                await self._progress(
                    document_id, ProcessingStatus.EMBEDDING, 20 + 50 * done / max(total, 1),
                    f"Embedded {done}/{total} chunks", chunks_processed=done,
                )

            vectors = await self._gateway.embed_texts(
                [p.content for p in pieces], on_progress=_on_embed_progress
            )
            if len(vectors) != len(pieces):
                raise IngestionError(
                    f"Chunk/embedding count mismatch: {len(pieces)} chunks, {len(vectors)} embeddings",
                    provider_name="ingestion",
                )

            chunks = self._build_valid_chunks(document_id, pieces, vectors)
            if not chunks:
                raise IngestionError("No chunk passed validation", provider_name="ingestion")

            await self._progress(document_id, ProcessingStatus.STORING, 75, "Storing chunks")
            await self._replace_chunks(document_id, chunks)

            elapsed_ms = int((time.perf_counter() - started) * 1000)
            await self._pool.update(
                records.DOCUMENTS_TABLE,
                {
                    "processed": True,
                    "chunk_count": len(chunks),
                    "processing_time_ms": elapsed_ms,
                    "error_message": None,
                },
                {"id": document_id},
            )
            await self._cache.invalidate_document(document_id)
        except asyncio.CancelledError:
            await self._mark_failed(document_id, "Processing cancelled")
            raise
        except Exception as exc:  # noqa: BLE001 - every failure marks the document
            await self._mark_failed(document_id, str(exc))
            log.error("document_processing_failed", error=str(exc), error_type=type(exc).__name__)
            if isinstance(exc, IngestionError):
                raise
            raise IngestionError(
                f"Processing {document_id} failed: {exc}", provider_name="ingestion",
                cause=type(exc).__name__,
            ) from exc

        await self._progress(
            document_id, ProcessingStatus.COMPLETED, 100,
            f"Stored {len(chunks)} chunks", chunks_processed=len(chunks),
        )
        log.info(
            "document_processing_completed",
            chunks=len(chunks),
            dropped=len(pieces) - len(chunks),
            elapsed_ms=elapsed_ms,
        )
        return await self.get_document(document_id)

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Document:
        row = await self._pool.select_one(records.DOCUMENTS_TABLE, {"id": document_id})
        if row is None:
            raise DocumentNotFoundError(f"Document {document_id} not found", provider_name="ingestion")
        return records.document_from_row(row)

    async def get_chunks(self, document_id: str) -> list[Chunk]:
        rows = await self._pool.select(
            records.CHUNKS_TABLE, {"document_id": document_id}, order_by="chunk_index"
        )
        return [records.chunk_from_row(r) for r in rows]

    async def get_stuck_documents(
        self,
        staleness: float | None = None,
        now: datetime | None = None,
    ) -> list[Document]:
        """Unprocessed documents uploaded longer than the staleness window ago.

        Failed documents are included so they can be reset and retried.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=staleness if staleness is not None else self._stuck_after)
        rows = await self._pool.select(
            records.DOCUMENTS_TABLE,
            {"processed": False, "upload_date__lt": cutoff},
            order_by="upload_date",
        )
        return [records.document_from_row(r) for r in rows]

    async def reset_stuck_documents(self, staleness: float | None = None) -> list[str]:
        """Remove partial chunks of stuck documents and reset their state.

        Returns the ids that were reset so the caller can re-enqueue them.
        """
        stuck = await self.get_stuck_documents(staleness)
        reset: list[str] = []
        for document in stuck:
            await self.reset_document(document.id)
            reset.append(document.id)
        if reset:
            logger.warning("stuck_documents_reset", count=len(reset), document_ids=reset)
        return reset

    async def reset_document(self, document_id: str) -> None:
        """Delete a document's chunks and return it to the unprocessed state.

        Waits for a processing run of the same document to finish first.
        """
        async with self._lock_for(document_id):
            async with self._pool.transaction() as db:
                await db.execute(f"DELETE FROM {records.CHUNKS_TABLE} WHERE document_id = ?", (document_id,))
                await db.execute(
                    f"UPDATE {records.DOCUMENTS_TABLE} SET processed = 0, chunk_count = NULL, "
                    "processing_time_ms = NULL, error_message = NULL WHERE id = ?",
                    (document_id,),
                )
            await self._cache.invalidate_document(document_id)
            if self._tracker is not None:
                self._tracker.remove(document_id)

    async def get_unprocessed_documents(self) -> list[Document]:
        rows = await self._pool.select(
            records.DOCUMENTS_TABLE, {"processed": False}, order_by="upload_date"
        )
        return [records.document_from_row(r) for r in rows]

    async def cleanup_invalid_chunks(self, batch_size: int = 100) -> int:
        """Delete persisted chunks that fail the stored-chunk rules.

        Affected documents get their ``chunk_count`` recomputed.  Returns the
        number of chunks deleted.
        """
        invalid: list[str] = []
        affected: set[str] = set()
        offset = 0
        while True:
            rows = await self._pool.fetch_all(
                f"SELECT id, document_id, content, embedding, token_count FROM {records.CHUNKS_TABLE} "
                "ORDER BY id LIMIT ? OFFSET ?",
                (_CLEANUP_PAGE, offset),
            )
            if not rows:
                break
            offset += len(rows)
            for row in rows:
                reasons = validate_stored_chunk(
                    row["content"],
                    schema.decode_embedding(row["embedding"]) if row["embedding"] else None,
                    row["token_count"],
                    self._gateway.dimension,
                )
                if reasons:
                    invalid.append(row["id"])
                    affected.add(row["document_id"])
                    logger.debug("invalid_chunk_found", chunk_id=row["id"], reasons=reasons)

        for start in range(0, len(invalid), batch_size):
            await self._pool.delete(records.CHUNKS_TABLE, {"id": invalid[start : start + batch_size]})

        for document_id in affected:
            remaining = await self._pool.count(records.CHUNKS_TABLE, {"document_id": document_id})
            await self._pool.update(records.DOCUMENTS_TABLE, {"chunk_count": remaining}, {"id": document_id})
            await self._cache.invalidate_document(document_id)

        logger.info("invalid_chunks_cleaned", deleted=len(invalid), documents=len(affected))
        return len(invalid)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def _chunk(self, content: str) -> list[TextChunk]:
        if self._offload and self._worker_pool is not None:
            raw = await self._worker_pool.run(
                "chunk_text",
                {
                    "content": content,
                    "chunk_size": self._chunker.chunk_size,
                    "overlap": self._chunker.overlap,
                    "min_tokens": self._chunker.min_tokens,
                    "tokenizer": self._tokenizer,
                    "encoding": self._encoding,
                },
            )
            return [TextChunk.model_validate(item) for item in raw]
        return self._chunker.chunk(content)

    def _build_valid_chunks(
        self,
        document_id: str,
        pieces: list[TextChunk],
        vectors: list[list[float]],
    ) -> list[Chunk]:
        chunks: list[Chunk] = []
        for piece, vector in zip(pieces, vectors):
            reasons = validate_chunk(piece.content, vector, piece.token_count, self._gateway.dimension)
            if reasons:
                logger.warning(
                    "chunk_rejected", document_id=document_id, chunk_index=piece.index, reasons=reasons
                )
                continue
            chunks.append(
                Chunk(
                    id=uuid.uuid4().hex,
                    document_id=document_id,
                    content=piece.content,
                    embedding=vector,
                    chunk_index=len(chunks),
                    token_count=piece.token_count,
                )
            )
        return chunks

    async def _replace_chunks(self, document_id: str, chunks: list[Chunk]) -> None:
        await self._pool.delete(records.CHUNKS_TABLE, {"document_id": document_id})
        for start in range(0, len(chunks), self._insert_batch_size):
            if start > 0 and self._insert_batch_delay > 0:
                await self._sleep(self._insert_batch_delay)
            batch = chunks[start : start + self._insert_batch_size]
            await self._pool.insert(records.CHUNKS_TABLE, [records.chunk_to_row(c) for c in batch])
            await self._progress(
                document_id, ProcessingStatus.STORING,
                75 + 20 * (start + len(batch)) / len(chunks),
                f"Stored {start + len(batch)}/{len(chunks)} chunks",
            )

    async def _mark_failed(self, document_id: str, message: str) -> None:
        # Runs under the document lock, so every chunk present was written by this run.
        try:
            await self._pool.delete(records.CHUNKS_TABLE, {"document_id": document_id})
            await self._pool.update(
                records.DOCUMENTS_TABLE,
                {"processed": False, "chunk_count": None, "error_message": message[:1000]},
                {"id": document_id},
            )
            await self._cache.invalidate_document(document_id)
        except DocRagError as exc:
            logger.error("document_failure_not_recorded", document_id=document_id, error=str(exc))
        await self._progress(document_id, ProcessingStatus.FAILED, 0, "Processing failed", error=message)

    async def _progress(
        self,
        document_id: str,
        status: ProcessingStatus,
        progress: float,
        step: str,
        **counters: Any,
    ) -> None:
        if self._tracker is not None:
            await self._tracker.update(document_id, status, progress, step, **counters)


