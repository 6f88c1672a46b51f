"""Retrieval request/response models.

:class:`SearchOptions` carries both the switches a caller flips per query
(thresholds, result count, which ranking signals apply) and the ranking
weights.  Only the direction of each signal matters to callers; the
magnitudes are tunable defaults.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SearchOptions(BaseModel):
    """Per-query retrieval options and ranking weights."""

    model_config = ConfigDict(frozen=True)

    similarity_threshold: float = Field(default=0.25, ge=-1.0, le=1.0)
    max_chunks: int = Field(default=8, ge=1, le=100)
    min_chunk_length: int = Field(default=30, ge=0)
    overfetch_factor: int = Field(default=2, ge=1)

    # --- Which ranking signals apply ---
    diversity_boost: bool = True
    temporal_boost: bool = False
    rerank: bool = True

    # --- Ranking weights ---
    keyword_weight: float = Field(default=0.1, ge=0.0)
    diversity_weight: float = Field(default=0.05, ge=0.0)
    recency_weight: float = Field(default=0.05, ge=0.0)
    recency_window_days: float = Field(default=365.0, gt=0.0)
    phrase_weight: float = Field(default=0.1, ge=0.0)
    bigram_weight: float = Field(default=0.05, ge=0.0)

    @property
    def match_count(self) -> int:
        """Number of candidates to fetch from the vector store."""
        return self.max_chunks * self.overfetch_factor

    def cache_fields(self) -> dict:
        """Fields that change the outcome of a query, for cache keys."""
        return self.model_dump(mode="json")


class SearchResult(BaseModel):
    """A candidate chunk returned by vector search, plus its final score."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    content: str
    similarity: float
    document_title: str = ""
    chunk_index: int = 0
    token_count: int = 0
    document_created_at: datetime | None = None
    final_score: float | None = None


class RetrievalResult(BaseModel):
    """Ranked chunks and the context assembled from them."""

    model_config = ConfigDict(frozen=True)

    query: str = ""
    chunks: list[SearchResult] = Field(default_factory=list)
    context_text: str = ""
    sources: list[str] = Field(default_factory=list)
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    search_time_ms: int = 0
    cache_hit: bool = False
    total_chunks_available: int = 0
    error: str | None = Field(
        default=None, description="Set when retrieval degraded to an empty result."
    )
