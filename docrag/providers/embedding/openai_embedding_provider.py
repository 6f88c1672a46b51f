"""OpenAI-compatible embedding provider adapter.

Wraps the ``openai`` async client to implement :class:`IEmbeddingProvider`.
Supports OpenAI itself and OpenAI-compatible endpoints via a custom
``base_url``.  Client errors are translated into the docrag hierarchy so
the gateway can tell a rate limit (retry later) from a bad request (give up).
"""

from __future__ import annotations

import openai
import structlog

from docrag.config.settings import Settings
from docrag.interfaces.embedding_provider import IEmbeddingProvider
from docrag.utils.errors import EmbeddingError, ProviderUnavailableError, RateLimitError

logger = structlog.get_logger(logger_name=__name__)

_OPENAI_BATCH_LIMIT = 2048

# Known embedding model dimensions.
_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

# HTTP statuses that indicate a temporary upstream condition.
_TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by an OpenAI-compatible embeddings API.

    Uses ``text-embedding-3-small`` (1536 dims) by default.  The client's
    own retries are disabled; retrying is the gateway's job.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._api_key = settings.openai_api_key

        client_kwargs: dict = {"api_key": self._api_key or "unset", "max_retries": 0}
        if settings.openai_base_url:
            client_kwargs["base_url"] = settings.openai_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = settings.embedding_model
        self._dimension = _MODEL_DIMENSIONS.get(self._model, settings.embedding_dimension)
        self._provider_label = (
            "openai-compatible_embedding" if settings.openai_base_url else "openai_embedding"
        )

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Splits into batches of 2048 if the input exceeds the per-call limit.
        Vectors are returned in input order regardless of response order.
        """
        if not texts:
            return []

        all_embeddings: list[list[float]] = []
        for start in range(0, len(texts), _OPENAI_BATCH_LIMIT):
            batch = texts[start : start + _OPENAI_BATCH_LIMIT]
            try:
                response = await self._client.embeddings.create(input=batch, model=self._model)
            except openai.APIError as exc:
                raise self._translate_error(exc) from exc

            ordered = sorted(response.data, key=lambda item: item.index)
            all_embeddings.extend(list(item.embedding) for item in ordered)
            logger.info(
                "openai_embedding_batch",
                model=self._model,
                provider=self._provider_label,
                batch_size=len(batch),
                tokens=response.usage.total_tokens if response.usage else None,
            )

        if len(all_embeddings) != len(texts):
            raise EmbeddingError(
                f"Expected {len(texts)} embeddings, received {len(all_embeddings)}",
                provider_name=self.get_provider_name(),
            )
        return all_embeddings

    async def embed_single(self, text: str) -> list[float]:
        """Generate an embedding vector for a single text string."""
        result = await self.embed([text])
        return result[0]

    def get_dimension(self) -> int:
        return self._dimension

    def get_model_name(self) -> str:
        return self._model

    def get_provider_name(self) -> str:
        return self._provider_label

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured."""
        return bool(self._api_key)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _translate_error(self, exc: openai.APIError) -> Exception:
        name = self.get_provider_name()
        if isinstance(exc, openai.RateLimitError):
            return RateLimitError(f"Rate limit exceeded: {exc}", provider_name=name)
        if isinstance(exc, openai.APIConnectionError):
            # Includes APITimeoutError.
            return ProviderUnavailableError(f"Connection failed: {exc}", provider_name=name)
        status = getattr(exc, "status_code", None)
        if status in _TRANSIENT_STATUSES:
            return ProviderUnavailableError(
                f"Provider returned HTTP {status}: {exc}", provider_name=name, status=status
            )
        return EmbeddingError(f"{self._provider_label} API error: {exc}", provider_name=name)
