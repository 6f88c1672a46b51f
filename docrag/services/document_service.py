"""Document lifecycle: upload, lookup, delete, reprocess.

Uploads are validated, written to object storage, recorded in the store
and handed to the JobQueue as ``process_document`` jobs; the actual
chunking and embedding happen in
:class:`~docrag.services.ingestion.ingestion_service.DocumentProcessor`.
A storage failure aborts an upload before anything else is written.
"""

from __future__ import annotations

import re
import uuid
from pathlib import PurePath
from typing import Any

import structlog

from docrag.interfaces.object_storage import IObjectStorage
from docrag.models.document import Document, ProcessingProgress, ProcessingStatus
from docrag.models.jobs import Job
from docrag.models.stats import DocumentStats
from docrag.pipeline.job_queue import JobQueue
from docrag.pipeline.progress_tracker import ProgressTracker
from docrag.providers.database import records
from docrag.providers.database.connection_pool import ConnectionPool
from docrag.services.cache_store import CacheStore
from docrag.services.ingestion.ingestion_service import DocumentProcessor
from docrag.utils.errors import (
    DocRagError,
    DocumentNotFoundError,
    DocumentValidationError,
    PermanentJobError,
    StorageError,
)

logger = structlog.get_logger(logger_name=__name__)

PROCESS_DOCUMENT_JOB = "process_document"
REPROCESS_PRIORITY = 10

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class DocumentService:
    """Facade over the document store, object storage and ingestion queue."""

    def __init__(
        self,
        pool: ConnectionPool,
        cache: CacheStore,
        storage: IObjectStorage,
        queue: JobQueue,
        processor: DocumentProcessor,
        tracker: ProgressTracker | None = None,
        max_upload_bytes: int = 10 * 1024 * 1024,
        min_content_chars: int = 100,
        allowed_extensions: list[str] | None = None,
    ) -> None:
        self._pool = pool
        self._cache = cache
        self._storage = storage
        self._queue = queue
        self._processor = processor
        self._tracker = tracker
        self._max_upload_bytes = max_upload_bytes
        self._min_content_chars = min_content_chars
        self._allowed_extensions = [e.lower() for e in (allowed_extensions or [".md", ".markdown", ".txt"])]

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        filename: str,
        data: bytes,
        title: str | None = None,
        priority: int = 0,
        skip_processing: bool = False,
    ) -> Document:
        """Validate, store and enqueue a new document.

        Raises
        ------
        DocumentValidationError
            Wrong extension, too large, not UTF-8 or too short.
        StorageError
            If the file could not be stored; nothing else is written.
        """
        content = self.validate_upload(filename, data)
        document_id = uuid.uuid4().hex
        safe_name = _UNSAFE_FILENAME.sub("_", PurePath(filename).name)
        path = f"{document_id}-{safe_name}"

        await self._storage.put(path, data, content_type="text/markdown")

        document = Document(
            id=document_id,
            title=title or PurePath(filename).stem,
            content=content,
            file_path=path,
            file_size=len(data),
        )
        try:
            await self._pool.insert(records.DOCUMENTS_TABLE, records.document_to_row(document))
        except DocRagError:
            await self._delete_stored_file(path)
            raise

        await self._cache.set_document(document_id, document.model_dump(mode="json"))
        if self._tracker is not None:
            await self._tracker.update(document_id, ProcessingStatus.QUEUED, 0, "Queued for processing")

        if not skip_processing:
            job_id = self._queue.enqueue(
                PROCESS_DOCUMENT_JOB, {"document_id": document_id}, priority=priority
            )
            logger.info("document_uploaded", document_id=document_id, size=len(data), job_id=job_id)
        else:
            logger.info("document_uploaded", document_id=document_id, size=len(data), queued=False)
        return document

    def validate_upload(self, filename: str, data: bytes) -> str:
        """Return the decoded content of a valid upload."""
        extension = PurePath(filename).suffix.lower()
        if extension not in self._allowed_extensions:
            raise DocumentValidationError(
                f"Unsupported file type {extension or '(none)'}; allowed: {', '.join(self._allowed_extensions)}"
            )
        if len(data) > self._max_upload_bytes:
            raise DocumentValidationError(
                f"File is {len(data)} bytes; maximum is {self._max_upload_bytes}"
            )
        try:
            content = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DocumentValidationError("File is not valid UTF-8") from exc
        if len(content.strip()) < self._min_content_chars:
            raise DocumentValidationError(
                f"Content has fewer than {self._min_content_chars} characters"
            )
        return content

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_document(self, document_id: str) -> Document:
        cached = await self._cache.get_document(document_id)
        if cached is not None:
            return Document.model_validate(cached)
        document = await self._processor.get_document(document_id)
        await self._cache.set_document(document_id, document.model_dump(mode="json"))
        return document

    async def list_documents(
        self,
        processed: bool | None = None,
        limit: int = 100,
    ) -> list[Document]:
        filters: dict[str, Any] = {} if processed is None else {"processed": processed}
        rows = await self._pool.select(
            records.DOCUMENTS_TABLE, filters, order_by="-upload_date", limit=limit
        )
        return [records.document_from_row(r) for r in rows]

    def get_progress(self, document_id: str) -> ProcessingProgress | None:
        return self._tracker.get(document_id) if self._tracker is not None else None

    async def get_stats(self) -> DocumentStats:
        total = await self._pool.count(records.DOCUMENTS_TABLE)
        processed = await self._pool.count(records.DOCUMENTS_TABLE, {"processed": True})
        failed = await self._pool.count(
            records.DOCUMENTS_TABLE, {"processed": False, "error_message__ne": None}
        )
        chunks = await self._pool.count(records.CHUNKS_TABLE)
        return DocumentStats(
            total_documents=total,
            processed_documents=processed,
            pending_documents=total - processed - failed,
            failed_documents=failed,
            total_chunks=chunks,
            avg_chunks_per_document=round(chunks / processed, 2) if processed else 0.0,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def delete_document(self, document_id: str) -> None:
        """Remove a document, its chunks (cascade), stored file and cache entries."""
        document = await self._processor.get_document(document_id)
        if document.file_path:
            await self._delete_stored_file(document.file_path)
        await self._pool.delete(records.DOCUMENTS_TABLE, {"id": document_id})
        await self._cache.invalidate_document(document_id)
        if self._tracker is not None:
            self._tracker.remove(document_id)
        logger.info("document_deleted", document_id=document_id)

    async def reprocess_document(self, document_id: str, priority: int = REPROCESS_PRIORITY) -> str:
        """Drop existing chunks, reset state and enqueue processing. Returns the job id.

        Pending or running ``process_document`` jobs for the document are
        cancelled first; the reset waits for a run already in progress.
        """
        await self._processor.get_document(document_id)
        superseded = self._queue.cancel_matching(PROCESS_DOCUMENT_JOB, {"document_id": document_id})
        await self._processor.reset_document(document_id)
        if self._tracker is not None:
            await self._tracker.update(document_id, ProcessingStatus.QUEUED, 0, "Queued for reprocessing")
        job_id = self._queue.enqueue(PROCESS_DOCUMENT_JOB, {"document_id": document_id}, priority=priority)
        logger.info(
            "document_reprocess_queued", document_id=document_id, job_id=job_id, superseded=superseded
        )
        return job_id

    async def reset_stuck_documents(self, requeue: bool = True) -> list[str]:
        """Reset documents stuck in processing and (optionally) enqueue them again."""
        reset = await self._processor.reset_stuck_documents()
        if requeue:
            for document_id in reset:
                self._queue.cancel_matching(PROCESS_DOCUMENT_JOB, {"document_id": document_id})
                self._queue.enqueue(PROCESS_DOCUMENT_JOB, {"document_id": document_id}, priority=REPROCESS_PRIORITY)
        return reset

    async def reprocess_unprocessed(self) -> list[str]:
        """Enqueue every unprocessed document; returns the job ids."""
        job_ids = []
        for document in await self._processor.get_unprocessed_documents():
            job_ids.append(
                self._queue.enqueue(PROCESS_DOCUMENT_JOB, {"document_id": document.id})
            )
        logger.info("unprocessed_documents_queued", count=len(job_ids))
        return job_ids

    # ------------------------------------------------------------------
    # Job integration
    # ------------------------------------------------------------------

    async def process_document_job(self, job: Job) -> dict[str, Any]:
        """JobQueue processor for ``process_document`` jobs."""
        document_id = job.payload.get("document_id")
        if not document_id:
            raise PermanentJobError("process_document job without document_id", provider_name="job_queue")
        document = await self._processor.process(document_id)
        return {"document_id": document_id, "chunk_count": document.chunk_count}

    async def on_job_failed(self, job: Job, error: BaseException) -> None:
        """Record the final error of a permanently failed processing job."""
        if job.type != PROCESS_DOCUMENT_JOB:
            return
        document_id = job.payload.get("document_id")
        if not document_id:
            return
        try:
            await self._pool.update(
                records.DOCUMENTS_TABLE,
                {"processed": False, "error_message": f"Failed after {job.attempts} attempts: {error}"[:1000]},
                {"id": document_id},
            )
            await self._cache.invalidate_document(document_id)
        except DocRagError as exc:
            logger.error("document_failure_not_recorded", document_id=document_id, error=str(exc))

    async def _delete_stored_file(self, path: str) -> None:
        try:
            await self._storage.delete(path)
        except StorageError as exc:
            logger.warning("stored_file_delete_failed", path=path, error=str(exc))


__all__ = ["DocumentNotFoundError", "DocumentService", "PROCESS_DOCUMENT_JOB"]
