"""Integration tests for RetrievalEngine against an ingested corpus."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from docrag.container import Container
from docrag.models.retrieval import SearchOptions, SearchResult
from docrag.services.retrieval_engine import RetrievalEngine, format_context
from docrag.utils.errors import ProviderUnavailableError
from tests.fakes import MockEmbeddingProvider, make_words

_OPTIONS = SearchOptions(similarity_threshold=0.05)


async def _ingest(container: Container, words: int = 2000, name: str = "guide.md", start: int = 0) -> str:
    data = make_words(words, start=start).encode()
    document = await container.documents.upload(name, data, skip_processing=True)
    await container.processor.process(document.id)
    return document.id


# ======================================================================
# Retrieval
# ======================================================================


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_query_finds_the_chunk_holding_its_words(self, container: Container) -> None:
        document_id = await _ingest(container)

        result = await container.retrieval.retrieve(make_words(10, start=500), _OPTIONS)

        assert result.error is None
        assert result.cache_hit is False
        assert result.chunks
        top = result.chunks[0]
        assert top.document_id == document_id
        assert top.chunk_index == 1
        assert top.final_score is not None
        assert result.sources == ["guide"]
        assert result.context_text.startswith("1. ")
        assert "[Source: guide]" in result.context_text
        assert 0.0 < result.quality_score <= 1.0
        assert result.total_chunks_available >= len(result.chunks)

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(
        self, container: Container, embedding_provider: MockEmbeddingProvider
    ) -> None:
        await _ingest(container)
        query = make_words(10, start=500)

        first = await container.retrieval.retrieve(query, _OPTIONS)
        calls = len(embedding_provider.calls)
        second = await container.retrieval.retrieve(query, _OPTIONS)

        assert second.cache_hit is True
        assert [c.id for c in second.chunks] == [c.id for c in first.chunks]
        assert len(embedding_provider.calls) == calls
        stats = container.retrieval.stats()
        assert stats.queries == 2
        assert stats.cache_hits == 1

    @pytest.mark.asyncio
    async def test_different_options_do_not_share_cache(self, container: Container) -> None:
        await _ingest(container)
        query = make_words(10, start=500)
        await container.retrieval.retrieve(query, _OPTIONS)
        other = await container.retrieval.retrieve(query, _OPTIONS.model_copy(update={"max_chunks": 2}))
        assert other.cache_hit is False
        assert len(other.chunks) <= 2

    @pytest.mark.asyncio
    async def test_processing_a_document_invalidates_results(self, container: Container) -> None:
        await _ingest(container)
        query = make_words(10, start=500)
        await container.retrieval.retrieve(query, _OPTIONS)

        await _ingest(container, words=300, name="more.md", start=5000)

        again = await container.retrieval.retrieve(query, _OPTIONS)
        assert again.cache_hit is False

    @pytest.mark.asyncio
    async def test_empty_query_degrades(self, container: Container) -> None:
        result = await container.retrieval.retrieve("  ?!  ")
        assert result.chunks == []
        assert result.error is not None
        assert result.quality_score == 0.0

    @pytest.mark.asyncio
    async def test_no_documents_gives_empty_result(self, container: Container) -> None:
        result = await container.retrieval.retrieve("anything at all")
        assert result.error is None
        assert result.chunks == []
        assert result.context_text == ""

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades_to_empty(self, container: Container) -> None:
        await _ingest(container)
        failing = AsyncMock(side_effect=ProviderUnavailableError("down", provider_name="mock"))
        with patch.object(container.gateway, "embed_query", failing):
            result = await container.retrieval.retrieve(make_words(5, start=900), _OPTIONS)

        assert result.chunks == []
        assert result.error is not None
        assert "down" in result.error
        assert container.retrieval.stats().failures == 1

    @pytest.mark.asyncio
    async def test_search_relevant_chunks_raises_on_failure(self, container: Container) -> None:
        failing = AsyncMock(side_effect=ProviderUnavailableError("down", provider_name="mock"))
        with patch.object(container.gateway, "embed_query", failing):
            with pytest.raises(ProviderUnavailableError):
                await container.retrieval.search_relevant_chunks("some query", _OPTIONS)

    @pytest.mark.asyncio
    async def test_search_relevant_chunks_returns_ranked(self, container: Container) -> None:
        await _ingest(container)
        chunks = await container.retrieval.search_relevant_chunks(make_words(10, start=500), _OPTIONS)
        assert chunks[0].chunk_index == 1
        assert await container.retrieval.search_relevant_chunks("???", _OPTIONS) == []


class TestOffloadedRanking:
    @pytest.mark.asyncio
    async def test_worker_pool_ranking_matches_inline(self, container: Container) -> None:
        await _ingest(container)
        query = make_words(10, start=500)
        offloaded = RetrievalEngine(
            pool=container.pool,
            gateway=container.gateway,
            cache=container.cache,
            worker_pool=container.worker_pool,
            offload_ranking=True,
        )

        inline = await container.retrieval.search_relevant_chunks(query, _OPTIONS)
        remote = await offloaded.search_relevant_chunks(query, _OPTIONS)

        assert [c.id for c in remote] == [c.id for c in inline]
        assert container.worker_pool.stats().tasks_completed >= 1


# ======================================================================
# Batch, warmup and maintenance
# ======================================================================


class TestBatchAndMaintenance:
    @pytest.mark.asyncio
    async def test_retrieve_many_keeps_input_order(self, container: Container) -> None:
        await _ingest(container)
        queries = [make_words(5, start=s) for s in (1900, 100, 1200, 700, 400, 1500, 50)]

        results = await container.retrieval.retrieve_many(queries, _OPTIONS)

        assert [r.query for r in results] == queries
        assert all(r.error is None for r in results)

    @pytest.mark.asyncio
    async def test_precompute_embeddings_warms_cache(
        self, container: Container, embedding_provider: MockEmbeddingProvider
    ) -> None:
        texts = ["first question", "second question", "   "]
        assert await container.retrieval.precompute_embeddings(texts) == 2

        calls = len(embedding_provider.calls)
        await container.gateway.embed_query("first question")
        assert len(embedding_provider.calls) == calls

    @pytest.mark.asyncio
    async def test_warmup_counts_successes(self, container: Container) -> None:
        await _ingest(container)
        ok = await container.retrieval.warmup([make_words(5, start=10), "?!"], _OPTIONS)
        assert ok == 1

    @pytest.mark.asyncio
    async def test_clear_cache(self, container: Container) -> None:
        await _ingest(container)
        await container.retrieval.retrieve(make_words(10, start=500), _OPTIONS)
        assert await container.retrieval.clear_cache() >= 1
        again = await container.retrieval.retrieve(make_words(10, start=500), _OPTIONS)
        assert again.cache_hit is False

    @pytest.mark.asyncio
    async def test_health_check(self, container: Container) -> None:
        checks = await container.health()
        assert checks == {"database": True, "cache": True, "embedding": True, "queue": False}


class TestFormatContext:
    def test_numbered_attributed_paragraphs(self) -> None:
        chunks = [
            SearchResult(id="a", document_id="d1", content="  First chunk.  ", similarity=0.876, document_title="Guide"),
            SearchResult(
                id="b",
                document_id="d2",
                content="Second chunk.",
                similarity=0.5,
                document_created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            ),
        ]
        assert format_context(chunks) == (
            "1. First chunk. [Source: Guide] (Similarity: 88%)\n\n"
            "2. Second chunk. [Source: Unknown] (Similarity: 50%)"
        )

    def test_empty(self) -> None:
        assert format_context([]) == ""
