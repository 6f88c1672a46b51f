"""Validation rules a chunk must pass before it is persisted.

Two entry points:

* :func:`validate_chunk`: checks a freshly embedded chunk during
  ingestion (length, token bounds, embedding dimension and finiteness).
* :func:`validate_stored_chunk`: the stricter sweep used by
  ``cleanup_invalid_chunks`` on rows already in the store, which also
  rejects chunks that are mostly markdown syntax or have too few words.

Both return a list of human-readable reasons; an empty list means valid.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from docrag.utils.text_normalizer import is_mostly_markdown, word_count

MIN_CONTENT_CHARS = 20
MIN_TOKENS = 5
MAX_TOKENS = 2000
MIN_WORDS = 5


def validate_chunk(
    content: str,
    embedding: Sequence[float] | None,
    token_count: int,
    dimension: int,
) -> list[str]:
    reasons: list[str] = []
    if len(content.strip()) < MIN_CONTENT_CHARS:
        reasons.append(f"content shorter than {MIN_CONTENT_CHARS} characters")
    if token_count < MIN_TOKENS or token_count > MAX_TOKENS:
        reasons.append(f"token count {token_count} outside [{MIN_TOKENS}, {MAX_TOKENS}]")
    reasons.extend(validate_embedding(embedding, dimension))
    return reasons


def validate_embedding(embedding: Sequence[float] | None, dimension: int) -> list[str]:
    if embedding is None or len(embedding) == 0:
        return ["missing embedding"]
    reasons: list[str] = []
    if len(embedding) != dimension:
        reasons.append(f"embedding dimension {len(embedding)} != {dimension}")
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in embedding):
        reasons.append("embedding contains non-finite values")
    return reasons


def validate_stored_chunk(
    content: str,
    embedding: Sequence[float] | None,
    token_count: int,
    dimension: int,
) -> list[str]:
    reasons = validate_chunk(content, embedding, token_count, dimension)
    if word_count(content) < MIN_WORDS:
        reasons.append(f"fewer than {MIN_WORDS} words")
    if is_mostly_markdown(content):
        reasons.append("mostly markdown syntax")
    return reasons
