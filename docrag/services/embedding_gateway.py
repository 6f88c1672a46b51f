"""Resilient access to an embedding provider.

Every embedding request in docrag goes through :class:`EmbeddingGateway`:

1. **Cache**: vectors are looked up by content hash of (model, text)
   first; only misses reach the provider.
2. **Batching**: misses are sent ``batch_size`` at a time with a pause
   between batches to stay under provider rate limits.
3. **Timeouts**: each single call and each batch has its own deadline.
4. **Retries**: rate limits, 5xx/connection errors and timeouts are
   retried with exponential backoff by :class:`~docrag.utils.retry.RetryPolicy`.
5. **Validation**: every vector must have the configured dimension and
   contain only finite numbers.  A bad query vector is a permanent error;
   in a batch a bad vector is logged, left out of the cache and returned
   in place so the caller can drop that one unit.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from docrag.interfaces.embedding_provider import IEmbeddingProvider
from docrag.services.cache_store import CacheStore
from docrag.utils.errors import (
    EmbeddingError,
    EmbeddingTimeoutError,
    EmbeddingValidationError,
)
from docrag.utils.retry import RetryPolicy

logger = structlog.get_logger(logger_name=__name__)

ProgressCallback = Callable[[int, int], Any]


class EmbeddingGateway:
    """Cached, batched, time-boxed and retried embedding generation.

    Parameters
    ----------
    provider:
        The embedding backend.
    cache:
        Optional cache store; ``None`` disables caching.
    dimension:
        Expected vector length; defaults to ``provider.get_dimension()``.
    batch_size, batch_delay:
        Texts per provider call and the pause (seconds) between calls.
    call_timeout, batch_timeout:
        Deadlines for single-text and batch calls.
    retry_policy:
        Retry behaviour for transient provider errors.
    sleep:
        Awaitable used for the inter-batch pause.
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        cache: CacheStore | None = None,
        dimension: int | None = None,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        call_timeout: float = 60.0,
        batch_timeout: float = 120.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._dimension = dimension or provider.get_dimension()
        self._batch_size = max(1, batch_size)
        self._batch_delay = batch_delay
        self._call_timeout = call_timeout
        self._batch_timeout = batch_timeout
        self._retry = retry_policy or RetryPolicy(max_attempts=3, base_delay=1.0, name="embedding")
        self._sleep = sleep

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._provider.get_model_name()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_query(self, text: str) -> list[float]:
        """Embed one text (typically a search query), using the cache.

        Raises
        ------
        EmbeddingError
            On empty input, permanent provider errors or exhausted retries.
        EmbeddingValidationError
            If the provider returned a malformed vector.
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text", provider_name=self._provider.get_provider_name())

        if self._cache is not None:
            cached = await self._cache.get_embedding(self.model_name, text)
            if cached is not None and not self._problems(cached):
                logger.debug("embedding_cache_hit", chars=len(text))
                return cached

        vector = await self._retry.call(self._call_single, text)
        self.validate(vector)
        if self._cache is not None:
            await self._cache.set_embedding(self.model_name, text, vector)
        return vector

    async def embed_texts(
        self,
        texts: list[str],
        on_progress: ProgressCallback | None = None,
    ) -> list[list[float]]:
        """Embed many texts, returning vectors aligned with *texts*.

        ``on_progress(done, total)`` is called after the cache lookup and
        after each provider batch; it may be sync or async.
        Malformed vectors are not raised here; they come back in their slot
        for the caller to reject.
        """
        if not texts:
            return []
        total = len(texts)
        results: list[list[float] | None] = [None] * total

        if self._cache is not None:
            cached = await self._cache.get_embeddings(self.model_name, texts)
            for i, vector in enumerate(cached):
                if vector is not None and not self._problems(vector):
                    results[i] = vector

        # Identical texts are embedded once.
        pending: dict[str, list[int]] = {}
        for i, text in enumerate(texts):
            if results[i] is None:
                pending.setdefault(text, []).append(i)
        unique = list(pending)
        done = total - sum(len(ix) for ix in pending.values())
        logger.info(
            "embedding_texts",
            total=total,
            cached=done,
            to_embed=len(unique),
            batch_size=self._batch_size,
        )
        await self._report(on_progress, done, total)

        for start in range(0, len(unique), self._batch_size):
            if start > 0 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)
            batch = unique[start : start + self._batch_size]
            vectors = await self._retry.call(self._call_batch, batch)
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"Provider returned {len(vectors)} embeddings for {len(batch)} texts",
                    provider_name=self._provider.get_provider_name(),
                )
            valid_texts: list[str] = []
            valid_vectors: list[list[float]] = []
            for text, vector in zip(batch, vectors):
                problems = self._problems(vector)
                if problems:
                    logger.warning("embedding_rejected", chars=len(text), reasons=problems)
                else:
                    valid_texts.append(text)
                    valid_vectors.append(vector)
                for i in pending[text]:
                    results[i] = vector
                done += len(pending[text])
            if self._cache is not None and valid_texts:
                await self._cache.set_embeddings(self.model_name, valid_texts, valid_vectors)
            await self._report(on_progress, done, total)

        return [v if v is not None else [] for v in results]

    def validate(self, vector: list[float]) -> list[float]:
        """Raise :class:`EmbeddingValidationError` unless *vector* is well-formed."""
        problems = self._problems(vector)
        if problems:
            raise EmbeddingValidationError(
                "; ".join(problems), provider_name=self._provider.get_provider_name()
            )
        return vector

    async def health_check(self) -> bool:
        return self._provider.is_available()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _problems(self, vector: Any) -> list[str]:
        if not isinstance(vector, list) or not vector:
            return ["embedding is empty or not a list"]
        problems = []
        if len(vector) != self._dimension:
            problems.append(f"dimension {len(vector)} != {self._dimension}")
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in vector):
            problems.append("non-finite values")
        return problems

    async def _call_single(self, text: str) -> list[float]:
        try:
            return await asyncio.wait_for(self._provider.embed_single(text), self._call_timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeoutError(
                f"Embedding call exceeded {self._call_timeout}s",
                provider_name=self._provider.get_provider_name(),
            ) from exc

    async def _call_batch(self, batch: list[str]) -> list[list[float]]:
        try:
            return await asyncio.wait_for(self._provider.embed(batch), self._batch_timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeoutError(
                f"Embedding batch of {len(batch)} exceeded {self._batch_timeout}s",
                provider_name=self._provider.get_provider_name(),
            ) from exc

    @staticmethod
    async def _report(callback: ProgressCallback | None, done: int, total: int) -> None:
        if callback is None:
            return
        outcome = callback(done, total)
        if asyncio.iscoroutine(outcome):
            await outcome
