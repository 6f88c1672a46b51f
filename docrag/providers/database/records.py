"""Row ↔ model conversion for the document store tables."""

from __future__ import annotations

from typing import Any

from docrag.models.document import Chunk, Document
from docrag.providers.database import schema

DOCUMENTS_TABLE = "documents"
CHUNKS_TABLE = "document_chunks"


def document_to_row(document: Document) -> dict[str, Any]:
    row = document.model_dump()
    row["processed"] = int(document.processed)
    row["upload_date"] = schema.to_db_time(document.upload_date)
    row["created_at"] = schema.to_db_time(document.created_at)
    return row


def document_from_row(row: dict[str, Any]) -> Document:
    data = dict(row)
    data["processed"] = bool(data.get("processed"))
    data["upload_date"] = schema.from_db_time(data.get("upload_date"))
    data["created_at"] = schema.from_db_time(data.get("created_at"))
    return Document.model_validate(data)


def chunk_to_row(chunk: Chunk) -> dict[str, Any]:
    return {
        "id": chunk.id,
        "document_id": chunk.document_id,
        "content": chunk.content,
        "embedding": schema.encode_embedding(chunk.embedding),
        "chunk_index": chunk.chunk_index,
        "token_count": chunk.token_count,
        "created_at": schema.to_db_time(chunk.created_at),
    }


def chunk_from_row(row: dict[str, Any]) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        content=row["content"],
        embedding=schema.decode_embedding(row["embedding"]),
        chunk_index=row["chunk_index"],
        token_count=row["token_count"],
        created_at=schema.from_db_time(row["created_at"]),
    )
