"""Retrieval-augmented context assembly.

# ─── QUERY FLOW ───────────────────────────────────────────────────────
#
#   query ─▶ normalise ─▶ rag cache? ──hit──▶ RetrievalResult
#                             │ miss
#                             ▼
#                    embed (gateway, cached)
#                             ▼
#             vector search (max_chunks × overfetch)
#                             ▼
#           filter + rank (inline or WorkerPool task)
#                             ▼
#          quality score, context text, sources ─▶ cache
#
# retrieve() never raises: any failure yields an empty result with
# quality_score 0 and ``error`` set, so callers can always proceed.
# ──────────────────────────────────────────────────────────────────────
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from datetime import datetime
from typing import Any

import structlog

from docrag.models.retrieval import RetrievalResult, SearchOptions, SearchResult
from docrag.models.stats import RetrievalStats
from docrag.pipeline.worker_pool import WorkerPool
from docrag.providers.database.connection_pool import ConnectionPool
from docrag.services import ranking
from docrag.services.cache_store import CacheStore
from docrag.services.embedding_gateway import EmbeddingGateway
from docrag.utils.text_normalizer import normalize_query, query_terms

logger = structlog.get_logger(logger_name=__name__)

_BATCH_SIZE = 5


def cache_key(normalized_query: str, options: SearchOptions) -> str:
    payload = json.dumps({"q": normalized_query, **options.cache_fields()}, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def format_context(chunks: list[SearchResult]) -> str:
    """Render ranked chunks as numbered, source-attributed paragraphs."""
    lines = []
    for i, chunk in enumerate(chunks, start=1):
        pct = round(chunk.similarity * 100)
        title = chunk.document_title or "Unknown"
        lines.append(f"{i}. {chunk.content.strip()} [Source: {title}] (Similarity: {pct}%)")
    return "\n\n".join(lines)


class RetrievalEngine:
    """Turns a free-text query into ranked chunks and a context block.

    Parameters
    ----------
    pool:
        Connection pool used for vector search.
    gateway:
        Embedding gateway for the query vector.
    cache:
        Cache store for search rows and whole results.
    worker_pool:
        Optional worker pool; ranking runs there when *offload_ranking*.
    default_options:
        Options used when a call passes none.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        gateway: EmbeddingGateway,
        cache: CacheStore,
        worker_pool: WorkerPool | None = None,
        offload_ranking: bool = False,
        default_options: SearchOptions | None = None,
        batch_size: int = _BATCH_SIZE,
    ) -> None:
        self._pool = pool
        self._gateway = gateway
        self._cache = cache
        self._worker_pool = worker_pool
        self._offload_ranking = offload_ranking and worker_pool is not None
        self._default_options = default_options or SearchOptions()
        self._batch_size = max(1, batch_size)
        self._queries = 0
        self._cache_hits = 0
        self._failures = 0
        self._total_time_ms = 0.0

    @property
    def default_options(self) -> SearchOptions:
        return self._default_options

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def retrieve(self, query: str, options: SearchOptions | None = None) -> RetrievalResult:
        """Return ranked chunks and assembled context for *query*."""
        options = options or self._default_options
        started = time.perf_counter()
        self._queries += 1
        normalized = normalize_query(query or "")
        if not normalized:
            return self._empty(query, started, "Query is empty after normalisation")

        key = cache_key(normalized, options)
        cached = await self._cache.get_rag_context(key)
        if cached is not None:
            try:
                result = RetrievalResult.model_validate(cached)
            except ValueError:
                logger.warning("rag_cache_entry_invalid", key=key)
            else:
                self._cache_hits += 1
                logger.debug("rag_cache_hit", key=key)
                return result.model_copy(update={"cache_hit": True})

        try:
            candidates = await self._candidates(normalized, options)
            ranked = await self._rank(normalized, candidates, options)
        except Exception as exc:  # noqa: BLE001 - retrieval degrades to empty
            self._failures += 1
            logger.error("retrieval_failed", query=normalized[:80], error=str(exc))
            return self._empty(query, started, str(exc))

        chunks = [SearchResult.model_validate(row) for row in ranked]
        terms = query_terms(normalized)
        coverage = ranking.keyword_coverage((c.content for c in chunks), terms)
        sources = list(dict.fromkeys(c.document_title for c in chunks if c.document_title))
        elapsed_ms = self._elapsed(started)
        result = RetrievalResult(
            query=query,
            chunks=chunks,
            context_text=format_context(chunks),
            sources=sources,
            quality_score=round(
                ranking.quality_score([c.similarity for c in chunks], coverage, options.max_chunks), 4
            ),
            search_time_ms=elapsed_ms,
            total_chunks_available=len(candidates),
        )
        await self._cache.set_rag_context(key, result.model_dump(mode="json"))
        logger.info(
            "retrieval_completed",
            chunks=len(chunks),
            candidates=len(candidates),
            quality=result.quality_score,
            ms=elapsed_ms,
        )
        return result

    async def search_relevant_chunks(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """Ranked chunks only, without context assembly.  Raises on failure."""
        options = options or self._default_options
        normalized = normalize_query(query or "")
        if not normalized:
            return []
        candidates = await self._candidates(normalized, options)
        ranked = await self._rank(normalized, candidates, options)
        return [SearchResult.model_validate(row) for row in ranked]

    async def retrieve_many(
        self,
        queries: list[str],
        options: SearchOptions | None = None,
    ) -> list[RetrievalResult]:
        """Retrieve for several queries, ``batch_size`` at a time, in input order."""
        results: list[RetrievalResult] = []
        for start in range(0, len(queries), self._batch_size):
            batch = queries[start : start + self._batch_size]
            results.extend(await asyncio.gather(*(self.retrieve(q, options) for q in batch)))
        return results

    async def precompute_embeddings(self, texts: list[str]) -> int:
        """Warm the embedding cache for *texts*; returns how many were embedded."""
        normalized = [n for n in (normalize_query(t) for t in texts) if n]
        if not normalized:
            return 0
        vectors = await self._gateway.embed_texts(normalized)
        logger.info("embeddings_precomputed", count=len(vectors))
        return len(vectors)

    async def warmup(self, queries: list[str], options: SearchOptions | None = None) -> int:
        """Run *queries* once so their results are cached; returns successes."""
        results = await self.retrieve_many(queries, options)
        ok = sum(1 for r in results if r.error is None)
        logger.info("retrieval_warmup_completed", queries=len(queries), succeeded=ok)
        return ok

    async def clear_cache(self) -> int:
        return await self._cache.clear_retrieval()

    def stats(self) -> RetrievalStats:
        computed = self._queries - self._cache_hits
        return RetrievalStats(
            queries=self._queries,
            cache_hits=self._cache_hits,
            failures=self._failures,
            avg_search_time_ms=round(self._total_time_ms / computed, 2) if computed else 0.0,
        )

    async def health_check(self) -> dict[str, bool]:
        return {
            "database": await self._pool.health_check(),
            "cache": await self._cache.health_check(),
            "embedding": await self._gateway.health_check(),
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _candidates(self, normalized: str, options: SearchOptions) -> list[dict[str, Any]]:
        search_key = hashlib.sha256(
            f"{normalized}|{options.similarity_threshold}|{options.match_count}".encode("utf-8")
        ).hexdigest()[:16]
        cached = await self._cache.get_search_results(search_key)
        if cached is not None:
            return cached

        embedding = await self._gateway.embed_query(normalized)
        rows = await self._pool.vector_search(
            embedding,
            similarity_threshold=options.similarity_threshold,
            match_count=options.match_count,
        )
        candidates = [_plain_row(row) for row in rows]
        await self._cache.set_search_results(search_key, candidates)
        return candidates

    async def _rank(
        self,
        normalized: str,
        candidates: list[dict[str, Any]],
        options: SearchOptions,
    ) -> list[dict[str, Any]]:
        if not candidates:
            return []
        if self._offload_ranking:
            return await self._worker_pool.run(
                "rank_candidates",
                {
                    "query": normalized,
                    "candidates": candidates,
                    "options": options.model_dump(mode="json"),
                },
                priority=5,
            )
        return ranking.rank_candidates(normalized, candidates, options)

    def _empty(self, query: str, started: float, error: str) -> RetrievalResult:
        return RetrievalResult(query=query or "", search_time_ms=self._elapsed(started), error=error)

    def _elapsed(self, started: float) -> int:
        elapsed = (time.perf_counter() - started) * 1000
        self._total_time_ms += elapsed
        return int(elapsed)


def _plain_row(row: dict[str, Any]) -> dict[str, Any]:
    """JSON- and pickle-friendly copy of a vector search row."""
    plain = dict(row)
    created = plain.get("document_created_at")
    if isinstance(created, datetime):
        plain["document_created_at"] = created.isoformat()
    plain["similarity"] = float(plain["similarity"])
    return plain
