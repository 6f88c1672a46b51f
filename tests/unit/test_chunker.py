"""Unit tests for the TextChunker: fixed-overlap token-window chunking."""

from __future__ import annotations

import pytest

from docrag.services.ingestion.chunk_validator import (
    validate_chunk,
    validate_embedding,
    validate_stored_chunk,
)
from docrag.services.ingestion.chunker import (
    TextChunker,
    WhitespaceTokenCounter,
    build_token_counter,
)
from tests.fakes import make_words

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_chunker(chunk_size: int = 400, overlap: int = 40, min_tokens: int = 5) -> TextChunker:
    """Build a TextChunker that counts whitespace-separated words."""
    return TextChunker(
        chunk_size=chunk_size,
        overlap=overlap,
        min_tokens=min_tokens,
        counter=WhitespaceTokenCounter(),
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestWindowing:
    """Chunk counts, sizes and overlap on uniform word streams."""

    def test_two_thousand_words_make_six_chunks(self) -> None:
        chunks = _make_chunker().chunk(make_words(2000))
        assert len(chunks) == 6

    def test_every_chunk_within_size(self) -> None:
        chunks = _make_chunker().chunk(make_words(2000))
        assert all(c.token_count <= 400 for c in chunks)
        assert all(c.token_count >= 5 for c in chunks)

    def test_indices_are_contiguous(self) -> None:
        chunks = _make_chunker().chunk(make_words(2000))
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_consecutive_chunks_share_overlap(self) -> None:
        chunks = _make_chunker().chunk(make_words(2000))
        for earlier, later in zip(chunks, chunks[1:]):
            assert earlier.content.split()[-40:] == later.content.split()[:40]

    def test_zero_overlap_partitions_text(self) -> None:
        text = make_words(1000)
        chunks = _make_chunker(chunk_size=250, overlap=0).chunk(text)
        assert len(chunks) == 4
        assert " ".join(c.content for c in chunks) == text

    def test_all_words_covered_in_order(self) -> None:
        words = make_words(1234).split()
        chunks = _make_chunker().chunk(" ".join(words))
        seen: list[str] = []
        for chunk in chunks:
            for word in chunk.content.split():
                if not seen or word > seen[-1]:
                    seen.append(word)
        assert seen == words

    def test_small_document_is_single_chunk(self) -> None:
        chunks = _make_chunker().chunk(make_words(50))
        assert len(chunks) == 1
        assert chunks[0].token_count == 50


class TestEdgeCases:
    def test_fewer_than_min_tokens_returns_empty(self) -> None:
        assert _make_chunker().chunk("just four words here") == []

    def test_empty_text_returns_empty(self) -> None:
        assert _make_chunker().chunk("") == []
        assert _make_chunker().chunk("   \n\n  ") == []

    def test_runt_tail_is_absorbed(self) -> None:
        chunks = _make_chunker(chunk_size=400, overlap=0).chunk(make_words(403))
        assert len(chunks) == 1
        assert chunks[0].token_count == 403

    def test_tail_at_min_tokens_is_kept(self) -> None:
        chunks = _make_chunker(chunk_size=400, overlap=0).chunk(make_words(405))
        assert [c.token_count for c in chunks] == [400, 5]

    def test_html_comments_removed(self) -> None:
        text = "<!-- hidden note -->\n" + make_words(20)
        chunks = _make_chunker().chunk(text)
        assert "hidden" not in chunks[0].content

    def test_paragraph_breaks_survive(self) -> None:
        text = make_words(10) + "\n\n" + make_words(10, start=10)
        chunks = _make_chunker().chunk(text)
        assert "\n\n" in chunks[0].content

    def test_invalid_overlap_rejected(self) -> None:
        with pytest.raises(ValueError):
            TextChunker(chunk_size=100, overlap=100, counter=WhitespaceTokenCounter())

    def test_invalid_size_rejected(self) -> None:
        with pytest.raises(ValueError):
            TextChunker(chunk_size=0, overlap=0, counter=WhitespaceTokenCounter())


class TestTokenCounters:
    def test_whitespace_counter(self) -> None:
        assert WhitespaceTokenCounter().count("one two\nthree\tfour") == 4

    def test_build_whitespace_counter(self) -> None:
        assert build_token_counter("whitespace").name == "whitespace"

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown tokenizer"):
            build_token_counter("sentencepiece")


# ======================================================================
# Chunk validation
# ======================================================================


class TestValidateChunk:
    _GOOD = "This chunk has enough characters and words to pass."

    def test_valid_chunk_has_no_reasons(self) -> None:
        assert validate_chunk(self._GOOD, [0.1, 0.2, 0.3], 10, 3) == []

    def test_short_content_rejected(self) -> None:
        reasons = validate_chunk("too short", [0.1, 0.2, 0.3], 10, 3)
        assert any("shorter" in r for r in reasons)

    def test_token_bounds(self) -> None:
        assert validate_chunk(self._GOOD, [0.1, 0.2, 0.3], 4, 3)
        assert validate_chunk(self._GOOD, [0.1, 0.2, 0.3], 2001, 3)
        assert validate_chunk(self._GOOD, [0.1, 0.2, 0.3], 2000, 3) == []

    def test_wrong_dimension_rejected(self) -> None:
        reasons = validate_embedding([0.1, 0.2], 3)
        assert reasons == ["embedding dimension 2 != 3"]

    def test_non_finite_rejected(self) -> None:
        assert validate_embedding([0.1, float("nan"), 0.3], 3)
        assert validate_embedding([0.1, float("inf"), 0.3], 3)

    def test_missing_embedding_rejected(self) -> None:
        assert validate_embedding(None, 3) == ["missing embedding"]
        assert validate_embedding([], 3) == ["missing embedding"]

    def test_stored_chunk_rejects_mostly_markdown(self) -> None:
        content = "**__**__** | | | | | | | | | | **__**__**"
        reasons = validate_stored_chunk(content, [0.1, 0.2, 0.3], 10, 3)
        assert "mostly markdown syntax" in reasons

    def test_stored_chunk_rejects_few_words(self) -> None:
        reasons = validate_stored_chunk("supercalifragilistic expialidocious", [0.1, 0.2, 0.3], 5, 3)
        assert "fewer than 5 words" in reasons
