"""Point-in-time statistics snapshots for each component."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PoolStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_connections: int = 0
    active_connections: int = 0
    idle_connections: int = 0
    waiting_requests: int = 0
    total_queries: int = 0
    avg_query_time_ms: float = 0.0
    errors: int = 0
    utilization: float = Field(default=0.0, description="Active / max, as a percentage.")


class CacheStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    hits: int = 0
    misses: int = 0
    errors: int = 0
    hit_rate: float = 0.0
    backend: str = ""


class QueueStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    lanes: dict[str, int] = Field(default_factory=dict)
    processors: list[str] = Field(default_factory=list)


class WorkerPoolStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_workers: int = 0
    active_workers: int = 0
    idle_workers: int = 0
    max_workers: int = 0
    backlog: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    avg_task_time_ms: float = 0.0


class DocumentStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_documents: int = 0
    processed_documents: int = 0
    pending_documents: int = 0
    failed_documents: int = 0
    total_chunks: int = 0
    avg_chunks_per_document: float = 0.0


class RetrievalStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    queries: int = 0
    cache_hits: int = 0
    failures: int = 0
    avg_search_time_ms: float = 0.0
