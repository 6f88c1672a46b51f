"""Unit tests for text normalization utilities."""

from __future__ import annotations

from docrag.utils.text_normalizer import (
    MAX_QUERY_LENGTH,
    is_mostly_markdown,
    normalize_query,
    preprocess_markdown,
    query_terms,
    strip_markdown,
    word_count,
)


# ======================================================================
# normalize_query
# ======================================================================


class TestNormalizeQuery:
    def test_lowercases_and_strips_punctuation(self) -> None:
        assert normalize_query("What IS a Vector-Store?") == "what is a vector store"

    def test_collapses_whitespace(self) -> None:
        assert normalize_query("  many \t spaces\n\nhere ") == "many spaces here"

    def test_keeps_arabic_script(self) -> None:
        assert normalize_query("مرحبا بالعالم!") == "مرحبا بالعالم"

    def test_keeps_persian_zwnj(self) -> None:
        assert normalize_query("می‌خواهم") == "می‌خواهم"

    def test_caps_length(self) -> None:
        result = normalize_query("word " * 300)
        assert len(result) <= MAX_QUERY_LENGTH
        assert not result.endswith(" ")

    def test_empty_input(self) -> None:
        assert normalize_query("") == ""
        assert normalize_query("?!.,") == ""


class TestQueryTerms:
    def test_drops_short_words(self) -> None:
        assert query_terms("a is the vector db") == ["the", "vector"]

    def test_deduplicates_in_order(self) -> None:
        assert query_terms("cache vector cache store vector") == ["cache", "vector", "store"]


# ======================================================================
# Markdown helpers
# ======================================================================


class TestPreprocessMarkdown:
    def test_normalizes_line_endings(self) -> None:
        assert preprocess_markdown("a\r\nb\rc") == "a\nb\nc"

    def test_removes_html_comments(self) -> None:
        assert preprocess_markdown("keep <!-- drop\nthis --> me") == "keep  me"

    def test_collapses_blank_runs(self) -> None:
        assert preprocess_markdown("a\n\n\n\n\nb") == "a\n\nb"

    def test_removes_control_characters(self) -> None:
        assert preprocess_markdown("a\x00b\x07c") == "abc"


class TestStripMarkdown:
    def test_strips_headers_emphasis_and_links(self) -> None:
        text = "## Title\n\n**Bold** and [a link](http://example.com)"
        assert strip_markdown(text) == "Title Bold and a link"

    def test_list_markers_removed(self) -> None:
        assert strip_markdown("- one\n- two\n1. three") == "one two three"

    def test_prose_is_not_mostly_markdown(self) -> None:
        assert not is_mostly_markdown("A paragraph of ordinary prose with *one* emphasis.")

    def test_table_rule_is_mostly_markdown(self) -> None:
        assert is_mostly_markdown("**__**__** | | | | | | **__**")

    def test_empty_is_mostly_markdown(self) -> None:
        assert is_mostly_markdown("   ")


def test_word_count() -> None:
    assert word_count("one  two\nthree") == 3
