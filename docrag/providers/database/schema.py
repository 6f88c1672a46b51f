"""SQLite schema and value codecs for the document store.

# ─── STORAGE LAYOUT ───────────────────────────────────────────────────
#
#   documents          one row per upload; processed / error_message
#                      record the terminal ingestion state
#   document_chunks    one row per embedded chunk; ON DELETE CASCADE
#                      from documents, unique (document_id, chunk_index)
#
# Embeddings are stored as little-endian float32 BLOBs.  Timestamps are
# stored as fixed-width UTC strings (``2026-01-02T03:04:05.000000Z``) so
# that string comparison in SQL orders them chronologically.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import numpy as np

_CREATE_DOCUMENTS_TABLE = """\
CREATE TABLE IF NOT EXISTS documents (
    id                  TEXT    PRIMARY KEY,
    title               TEXT    NOT NULL,
    content             TEXT    NOT NULL,
    file_path           TEXT,
    file_size           INTEGER NOT NULL DEFAULT 0,
    processed           INTEGER NOT NULL DEFAULT 0,
    chunk_count         INTEGER,
    processing_time_ms  INTEGER,
    error_message       TEXT,
    upload_date         TEXT    NOT NULL,
    created_at          TEXT    NOT NULL
);
"""

_CREATE_CHUNKS_TABLE = """\
CREATE TABLE IF NOT EXISTS document_chunks (
    id           TEXT    PRIMARY KEY,
    document_id  TEXT    NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    content      TEXT    NOT NULL,
    embedding    BLOB    NOT NULL,
    chunk_index  INTEGER NOT NULL,
    token_count  INTEGER NOT NULL,
    created_at   TEXT    NOT NULL,
    UNIQUE(document_id, chunk_index)
);
"""

_CREATE_INDICES = [
    "CREATE INDEX IF NOT EXISTS idx_documents_processed ON documents(processed);",
    "CREATE INDEX IF NOT EXISTS idx_documents_upload_date ON documents(upload_date);",
    "CREATE INDEX IF NOT EXISTS idx_chunks_document ON document_chunks(document_id);",
]

SCHEMA_SCRIPT = "\n".join([_CREATE_DOCUMENTS_TABLE, _CREATE_CHUNKS_TABLE, *_CREATE_INDICES])

# Ranks chunks of processed documents by cosine similarity to the query.
VECTOR_SEARCH_SQL = """\
SELECT * FROM (
    SELECT c.id, c.document_id, c.content, c.chunk_index, c.token_count,
           d.title AS document_title, d.created_at AS document_created_at,
           cosine_similarity(c.embedding, ?) AS similarity
    FROM document_chunks c
    JOIN documents d ON d.id = c.document_id
    WHERE d.processed = 1
)
WHERE similarity IS NOT NULL AND similarity >= ?
ORDER BY similarity DESC
LIMIT ?;
"""

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_db_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TIME_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def encode_embedding(vector: list[float] | np.ndarray) -> bytes:
    return np.asarray(vector, dtype="<f4").tobytes()


def decode_embedding(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()


def cosine_similarity(a: bytes | None, b: bytes | None) -> float | None:
    """SQL function: cosine similarity of two float32 BLOBs.

    Returns ``None`` (SQL NULL) when either side is missing or the
    dimensions differ, and ``0.0`` for zero-length vectors.
    """
    if a is None or b is None:
        return None
    va = np.frombuffer(a, dtype="<f4")
    vb = np.frombuffer(b, dtype="<f4")
    if va.shape != vb.shape or va.size == 0:
        return None
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def adapt_param(value: Any) -> Any:
    """Convert Python values into types sqlite3 can bind."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return to_db_time(value)
    return value
