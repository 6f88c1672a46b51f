"""docrag domain models: re-exports all public model classes."""

from docrag.models.document import (
    Chunk,
    Document,
    ProcessingProgress,
    ProcessingStatus,
    TextChunk,
)
from docrag.models.jobs import Job, JobStatus, Lane, WorkerTask
from docrag.models.retrieval import RetrievalResult, SearchOptions, SearchResult
from docrag.models.stats import (
    CacheStats,
    DocumentStats,
    PoolStats,
    QueueStats,
    RetrievalStats,
    WorkerPoolStats,
)

__all__ = [
    "CacheStats",
    "Chunk",
    "Document",
    "DocumentStats",
    "Job",
    "JobStatus",
    "Lane",
    "PoolStats",
    "ProcessingProgress",
    "ProcessingStatus",
    "QueueStats",
    "RetrievalResult",
    "RetrievalStats",
    "SearchOptions",
    "SearchResult",
    "TextChunk",
    "WorkerPoolStats",
    "WorkerTask",
]
