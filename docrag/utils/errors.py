"""Custom exception hierarchy for docrag.

All application exceptions inherit from :class:`DocRagError`, which carries
an optional ``provider_name`` so handlers can identify which component or
external service (e.g. "openai", "sqlite", "job_queue") caused the failure,
plus a free-form ``context`` dict that is merged into structured log lines.

The hierarchy is organised by whether a failure is worth retrying:

    DocRagError                     (base -- catch-all)
    +-- TransientError              (retryable; RetryPolicy and JobQueue retry these)
    |   +-- RateLimitError          (provider rate limit exceeded)
    |   +-- ProviderUnavailableError(timeouts, connection resets, 5xx)
    |   +-- EmbeddingTimeoutError   (per-call / per-batch deadline exceeded)
    |   +-- PoolTimeoutError        (no connection freed within acquire_timeout)
    |   +-- TransientStoreError     (database locked / busy / I/O)
    +-- ConfigurationError
    +-- StoreError                  (constraint violations, bad queries)
    +-- PoolClosedError
    +-- EmbeddingError
    |   +-- EmbeddingValidationError(wrong dimension, non-finite values)
    +-- ChunkValidationError
    +-- IngestionError
    +-- DocumentNotFoundError
    +-- DocumentValidationError
    +-- StorageError
    +-- JobError
    |   +-- PermanentJobError       (never retried)
    |   +-- JobTimeoutError
    +-- WorkerError
        +-- WorkerTaskError
        +-- WorkerTimeoutError
        +-- WorkerCrashedError
        +-- WorkerPoolClosedError
"""

from __future__ import annotations

from typing import Any


class DocRagError(Exception):
    """Base exception for all docrag errors.

    Every subclass carries a human-readable ``message`` and an optional
    ``provider_name``.  ``__str__`` prefixes the provider name in brackets
    for log output, e.g. ``[openai] Rate limit exceeded``.
    """

    default_message = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        provider_name: str | None = None,
        **context: Any,
    ) -> None:
        self._message = message or self.default_message
        self._provider_name = provider_name
        self._context = context
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Retryable failures
# ---------------------------------------------------------------------------

class TransientError(DocRagError):
    """A failure that may succeed if the same operation is attempted again."""

    default_message = "Transient failure"


class RateLimitError(TransientError):
    """Raised when a provider rate limit is exceeded."""

    default_message = "Rate limit exceeded"


class ProviderUnavailableError(TransientError):
    """Raised when an external service times out, resets, or answers 5xx."""

    default_message = "External service is unavailable"


class EmbeddingTimeoutError(TransientError):
    """Raised when an embedding call or batch exceeds its deadline."""

    default_message = "Embedding request timed out"


class PoolTimeoutError(TransientError):
    """Raised when no pooled connection becomes free within the acquire timeout."""

    default_message = "Timed out waiting for a database connection"


class TransientStoreError(TransientError):
    """Raised when the store reports a locked/busy/I-O condition after retries."""

    default_message = "Document store temporarily unavailable"


# ---------------------------------------------------------------------------
# Configuration and storage
# ---------------------------------------------------------------------------

class ConfigurationError(DocRagError):
    """Raised on invalid or missing configuration at startup."""

    default_message = "Invalid configuration"


class StoreError(DocRagError):
    """Raised when a store operation fails permanently (constraint, bad query)."""

    default_message = "Document store operation failed"


class PoolClosedError(DocRagError):
    """Raised on acquire from, or by waiters of, a closed connection pool."""

    default_message = "Connection pool is closed"


class StorageError(DocRagError):
    """Raised when the object storage cannot persist or remove a file."""

    default_message = "Object storage operation failed"


# ---------------------------------------------------------------------------
# Embedding and ingestion
# ---------------------------------------------------------------------------

class EmbeddingError(DocRagError):
    """Raised when an embedding provider call fails permanently."""

    default_message = "Embedding generation failed"


class EmbeddingValidationError(EmbeddingError):
    """Raised when a provider returns a vector of the wrong shape or with NaN/inf."""

    default_message = "Embedding vector failed validation"


class ChunkValidationError(DocRagError):
    """Raised when a chunk cannot be persisted because it fails validation."""

    default_message = "Chunk failed validation"


class IngestionError(DocRagError):
    """Raised when processing a document fails; the document is marked failed."""

    default_message = "Document processing failed"


class DocumentNotFoundError(DocRagError):
    """Raised when a document id does not exist in the store."""

    default_message = "Document not found"


class DocumentValidationError(DocRagError):
    """Raised when an upload is rejected (size, encoding, extension, length)."""

    default_message = "Document failed validation"


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------

class JobError(DocRagError):
    """Raised for job-level failures inside the JobQueue."""

    default_message = "Job failed"


class PermanentJobError(JobError):
    """A job failure that must not be retried (e.g. malformed payload)."""

    default_message = "Job failed permanently"


class JobTimeoutError(JobError):
    """Raised when a job exceeds its execution timeout."""

    default_message = "Job timed out"


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

class WorkerError(DocRagError):
    """Base for failures surfaced by the WorkerPool."""

    default_message = "Worker task failed"


class WorkerTaskError(WorkerError):
    """Raised when a task handler raised inside its execution context."""


class WorkerTimeoutError(WorkerError):
    """Raised when a task exceeds its timeout; its context is torn down."""

    default_message = "Worker task timed out"


class WorkerCrashedError(WorkerError):
    """Raised when a task's execution context died while running it."""

    default_message = "Worker context crashed"


class WorkerPoolClosedError(WorkerError):
    """Raised on submit to a pool that has been shut down."""

    default_message = "Worker pool is shut down"


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` when *exc* is worth retrying."""
    return isinstance(exc, TransientError)
