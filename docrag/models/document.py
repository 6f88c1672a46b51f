"""Document and chunk models for the ingestion pipeline.

A :class:`Document` is an uploaded text file.  Ingestion splits its
content into :class:`TextChunk` windows, embeds each one and persists the
result as :class:`Chunk` rows that reference the document (cascade delete).
A document ends in exactly one terminal state: ``processed=True`` or a
non-null ``error_message``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """An uploaded document and its processing state."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique identifier (UUID hex).")
    title: str = Field(description="Human-readable title, usually the file stem.")
    content: str = Field(description="Full UTF-8 text of the document.")
    file_path: str | None = Field(default=None, description="Object storage path.")
    file_size: int = Field(default=0, ge=0, description="Size of the upload in bytes.")
    processed: bool = Field(default=False, description="True once chunks are persisted.")
    chunk_count: int | None = Field(default=None, ge=0)
    processing_time_ms: int | None = Field(default=None, ge=0)
    error_message: str | None = Field(default=None)
    upload_date: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class TextChunk(BaseModel):
    """A chunk produced by the chunker, before embedding."""

    model_config = ConfigDict(frozen=True)

    content: str
    token_count: int = Field(ge=0)
    index: int = Field(ge=0, description="Zero-based position within the document.")


class Chunk(BaseModel):
    """A persisted chunk with its embedding vector."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    content: str
    embedding: list[float] = Field(description="Fixed-dimension, all-finite vector.")
    chunk_index: int = Field(ge=0)
    token_count: int = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class ProcessingStatus(str, Enum):
    """Per-document progress status reported during ingestion."""

    QUEUED = "queued"
    PROCESSING = "processing"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingProgress(BaseModel):
    """Snapshot of one document's ingestion progress."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    status: ProcessingStatus = ProcessingStatus.QUEUED
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    current_step: str = ""
    chunks_processed: int = 0
    total_chunks: int = 0
    error: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
