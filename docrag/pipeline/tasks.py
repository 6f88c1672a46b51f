"""CPU-bound task handlers executed inside WorkerPool contexts.

Handlers are module-level functions taking a single JSON-like payload dict
so they can be pickled into worker processes.  They must not touch the
event loop, the database or the cache.
"""

from __future__ import annotations

import re
from typing import Any

from docrag.models.retrieval import SearchOptions
from docrag.services import ranking
from docrag.services.ingestion.chunker import TextChunker, build_token_counter
from docrag.utils.text_normalizer import normalize_query, preprocess_markdown, strip_markdown

_TOKEN = re.compile(r"\w+", re.UNICODE)
_SUFFIXES = ("ingly", "edly", "ing", "ness", "ment", "ed", "ly", "es", "s")


def normalize_text(payload: dict[str, Any]) -> dict[str, Any]:
    """Strip markdown and collapse whitespace."""
    return {"text": strip_markdown(preprocess_markdown(payload.get("text", "")))}


def tokenize(payload: dict[str, Any]) -> dict[str, Any]:
    """Lower-cased word tokens."""
    return {"tokens": _TOKEN.findall(payload.get("text", "").lower())}


def _stem(word: str) -> str:
    for suffix in _SUFFIXES:
        if len(word) > len(suffix) + 2 and word.endswith(suffix):
            return word[: -len(suffix)]
    return word


def process_text(payload: dict[str, Any]) -> dict[str, Any]:
    """Apply ``operations`` (``normalize``, ``tokenize``, ``stem``) in order."""
    text: str = payload.get("text", "")
    tokens: list[str] | None = None
    for op in payload.get("operations", ["normalize"]):
        if op == "normalize":
            text = normalize_text({"text": text})["text"]
        elif op == "tokenize":
            tokens = tokenize({"text": text})["tokens"]
        elif op == "stem":
            tokens = [_stem(t) for t in (tokens if tokens is not None else tokenize({"text": text})["tokens"])]
        else:
            raise ValueError(f"Unknown text operation: {op!r}")
    result: dict[str, Any] = {"text": text}
    if tokens is not None:
        result["tokens"] = tokens
    return result


def count_tokens(payload: dict[str, Any]) -> dict[str, Any]:
    counter = build_token_counter(payload.get("tokenizer", "tiktoken"), payload.get("encoding", "cl100k_base"))
    return {"tokens": counter.count(payload.get("text", ""))}


def chunk_text(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Chunk ``content`` with the chunker settings carried in the payload."""
    chunker = TextChunker(
        chunk_size=payload.get("chunk_size", 400),
        overlap=payload.get("overlap", 40),
        min_tokens=payload.get("min_tokens", 5),
        counter=build_token_counter(payload.get("tokenizer", "tiktoken"), payload.get("encoding", "cl100k_base")),
    )
    return [c.model_dump() for c in chunker.chunk(payload["content"])]


def rank_candidates(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Score and order retrieval candidates (see :mod:`docrag.services.ranking`)."""
    options = SearchOptions.model_validate(payload.get("options", {}))
    return ranking.rank_candidates(payload["query"], payload["candidates"], options)


def preprocess_query(payload: dict[str, Any]) -> dict[str, Any]:
    return {"query": normalize_query(payload.get("query", ""))}


TASK_HANDLERS = {
    "normalize_text": normalize_text,
    "tokenize": tokenize,
    "process_text": process_text,
    "count_tokens": count_tokens,
    "chunk_text": chunk_text,
    "rank_candidates": rank_candidates,
    "preprocess_query": preprocess_query,
}
