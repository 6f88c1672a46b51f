"""Multi-tier cache over an :class:`ICacheBackend`.

# ─── KEY SPACE ────────────────────────────────────────────────────────
#
#   emb:<sha256(model|text)>         embedding vectors        7 days
#   search:<hash>                    raw vector-search rows   30 min
#   rag:<hash>                       full RetrievalResult     30 min
#   doc:<document_id>                document records         6 h
#   chunk:<document_id>:...          per-document chunk data  6 h
#
# Embeddings are keyed by content hash so identical text is embedded
# once, ever.  Anything derived from the corpus (search, rag) is
# invalidated wholesale when a document changes.
#
# The cache is an optimisation, never a dependency: every backend error
# is logged, counted and answered as a miss (get) or a no-op (set).
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

import structlog

from docrag.interfaces.cache_backend import ICacheBackend
from docrag.models.stats import CacheStats

logger = structlog.get_logger(logger_name=__name__)

EMBEDDING_PREFIX = "emb:"
SEARCH_PREFIX = "search:"
RAG_PREFIX = "rag:"
DOCUMENT_PREFIX = "doc:"
CHUNK_PREFIX = "chunk:"

# Prefixes swept when any document changes.
CORPUS_DERIVED_PATTERNS = (f"{SEARCH_PREFIX}*", f"{RAG_PREFIX}*")


def content_hash(*parts: str) -> str:
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


class CacheStore:
    """Typed, fault-tolerant cache facade.

    Parameters
    ----------
    backend:
        Storage backend (memory or redis).
    default_ttl, embedding_ttl, search_ttl, document_ttl:
        TTL classes in seconds.
    max_key_length:
        Keys longer than this are replaced by ``prefix + sha256(key)[:16]``.
    """

    def __init__(
        self,
        backend: ICacheBackend,
        default_ttl: int = 3600,
        embedding_ttl: int = 7 * 24 * 3600,
        search_ttl: int = 1800,
        document_ttl: int = 6 * 3600,
        max_key_length: int = 250,
    ) -> None:
        self._backend = backend
        self.default_ttl = default_ttl
        self.embedding_ttl = embedding_ttl
        self.search_ttl = search_ttl
        self.document_ttl = document_ttl
        self._max_key_length = max_key_length
        self._hits = 0
        self._misses = 0
        self._errors = 0

    # ------------------------------------------------------------------
    # Generic operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the cached value for *key*, or ``None`` on miss or backend error."""
        key = self.make_key(key)
        try:
            raw = await self._backend.get(key)
        except Exception as exc:  # noqa: BLE001 - any backend failure is a miss
            self._record_error("get", key, exc)
            self._misses += 1
            return None
        if raw is None:
            self._misses += 1
            return None
        self._hits += 1
        return self._decode(key, raw)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store *value*; returns ``False`` if the backend rejected it."""
        key = self.make_key(key)
        try:
            await self._backend.set(key, json.dumps(value, default=str), ttl or self.default_ttl)
        except Exception as exc:  # noqa: BLE001
            self._record_error("set", key, exc)
            return False
        return True

    async def delete(self, key: str) -> bool:
        key = self.make_key(key)
        try:
            return await self._backend.delete(key)
        except Exception as exc:  # noqa: BLE001
            self._record_error("delete", key, exc)
            return False

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key matching glob *pattern*; returns the number removed."""
        try:
            deleted = await self._backend.delete_pattern(pattern)
        except Exception as exc:  # noqa: BLE001
            self._record_error("delete_pattern", pattern, exc)
            return 0
        logger.debug("cache_pattern_invalidated", pattern=pattern, deleted=deleted)
        return deleted

    async def get_many(self, keys: list[str]) -> list[Any | None]:
        """Batch get; positions with a miss (or on backend error) are ``None``."""
        if not keys:
            return []
        full_keys = [self.make_key(k) for k in keys]
        try:
            raws = await self._backend.get_many(full_keys)
        except Exception as exc:  # noqa: BLE001
            self._record_error("get_many", f"{len(keys)} keys", exc)
            self._misses += len(keys)
            return [None] * len(keys)
        values: list[Any | None] = []
        for key, raw in zip(full_keys, raws):
            if raw is None:
                self._misses += 1
                values.append(None)
            else:
                self._hits += 1
                values.append(self._decode(key, raw))
        return values

    async def set_many(self, items: dict[str, Any], ttl: int | None = None) -> bool:
        if not items:
            return True
        payload = {self.make_key(k): json.dumps(v, default=str) for k, v in items.items()}
        try:
            await self._backend.set_many(payload, ttl or self.default_ttl)
        except Exception as exc:  # noqa: BLE001
            self._record_error("set_many", f"{len(items)} keys", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def embedding_key(self, model: str, text: str) -> str:
        return EMBEDDING_PREFIX + content_hash(model, text)

    async def get_embedding(self, model: str, text: str) -> list[float] | None:
        return await self.get(self.embedding_key(model, text))

    async def set_embedding(self, model: str, text: str, vector: list[float]) -> bool:
        return await self.set(self.embedding_key(model, text), vector, self.embedding_ttl)

    async def get_embeddings(self, model: str, texts: list[str]) -> list[list[float] | None]:
        return await self.get_many([self.embedding_key(model, t) for t in texts])

    async def set_embeddings(self, model: str, texts: list[str], vectors: list[list[float]]) -> bool:
        items = {self.embedding_key(model, t): v for t, v in zip(texts, vectors)}
        return await self.set_many(items, self.embedding_ttl)

    # ------------------------------------------------------------------
    # Search, RAG context and documents
    # ------------------------------------------------------------------

    async def get_search_results(self, key: str) -> list[dict] | None:
        return await self.get(SEARCH_PREFIX + key)

    async def set_search_results(self, key: str, rows: list[dict]) -> bool:
        return await self.set(SEARCH_PREFIX + key, rows, self.search_ttl)

    async def get_rag_context(self, key: str) -> dict | None:
        return await self.get(RAG_PREFIX + key)

    async def set_rag_context(self, key: str, result: dict) -> bool:
        return await self.set(RAG_PREFIX + key, result, self.search_ttl)

    async def get_document(self, document_id: str) -> dict | None:
        return await self.get(DOCUMENT_PREFIX + document_id)

    async def set_document(self, document_id: str, document: dict) -> bool:
        return await self.set(DOCUMENT_PREFIX + document_id, document, self.document_ttl)

    async def invalidate_document(self, document_id: str) -> int:
        """Drop a document's entries and everything derived from the corpus."""
        patterns = (
            f"{DOCUMENT_PREFIX}{document_id}*",
            f"{CHUNK_PREFIX}{document_id}*",
            *CORPUS_DERIVED_PATTERNS,
        )
        deleted = 0
        for pattern in patterns:
            deleted += await self.invalidate_pattern(pattern)
        logger.info("document_cache_invalidated", document_id=document_id, deleted=deleted)
        return deleted

    async def clear_retrieval(self) -> int:
        """Drop all cached search results and RAG contexts."""
        deleted = 0
        for pattern in CORPUS_DERIVED_PATTERNS:
            deleted += await self.invalidate_pattern(pattern)
        return deleted

    # ------------------------------------------------------------------
    # Keys, health and stats
    # ------------------------------------------------------------------

    def make_key(self, key: str) -> str:
        """Return *key*, hashed down to ``prefix + 16 hex chars`` if too long."""
        if len(key) <= self._max_key_length:
            return key
        prefix, sep, _ = key.partition(":")
        head = f"{prefix}:" if sep and len(prefix) < 32 else ""
        return head + hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]

    async def health_check(self) -> bool:
        try:
            return await self._backend.ping()
        except Exception as exc:  # noqa: BLE001
            self._record_error("ping", "", exc)
            return False

    def stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            errors=self._errors,
            hit_rate=round(self._hits / total, 4) if total else 0.0,
            backend=self._backend.get_backend_name(),
        )

    def reset_stats(self) -> None:
        self._hits = self._misses = self._errors = 0

    async def close(self) -> None:
        await self._backend.close()

    def _decode(self, key: str, raw: str) -> Any | None:
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as exc:
            self._record_error("decode", key, exc)
            return None

    def _record_error(self, operation: str, key: str, exc: BaseException) -> None:
        self._errors += 1
        logger.warning("cache_backend_error", operation=operation, key=key, error=str(exc))
