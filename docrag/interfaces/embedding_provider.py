"""Abstract base class for text-embedding service providers.

Implementations wrap a concrete embedding API.  Retries, timeouts,
batching, caching and vector validation are *not* the provider's job;
:class:`~docrag.services.embedding_gateway.EmbeddingGateway` layers them on
top so every provider gets the same resilience.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider: OpenAI-compatible embeddings endpoint
# Located in: docrag/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by ingestion and retrieval."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a batch of texts.

        Parameters
        ----------
        texts:
            One or more text strings to embed.

        Returns
        -------
        list[list[float]]
            Embedding vectors corresponding positionally to *texts*.

        Raises
        ------
        docrag.utils.errors.RateLimitError
            If the provider throttled the request.
        docrag.utils.errors.ProviderUnavailableError
            On timeouts, connection failures and 5xx responses.
        docrag.utils.errors.EmbeddingError
            On any other provider failure.
        """

    @abstractmethod
    async def embed_single(self, text: str) -> list[float]:
        """Generate an embedding vector for a single text string."""

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors.

        Example values: ``1536`` (OpenAI ``text-embedding-3-small``),
        ``3072`` (``text-embedding-3-large``).
        """

    @abstractmethod
    def get_model_name(self) -> str:
        """Return the model identifier; part of every embedding cache key."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier for this provider."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider is configured and usable."""
