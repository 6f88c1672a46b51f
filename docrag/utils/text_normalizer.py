"""Text normalisation helpers for ingestion and retrieval.

Handles:
- Markdown pre-processing before chunking (HTML comments, control chars,
  line endings, runs of blank lines)
- Stripping markdown syntax to measure how much real prose a chunk holds
- Query normalisation for cache keys and keyword scoring, keeping Arabic
  and Persian script intact
"""

from __future__ import annotations

import re

_HTML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_BLANK_RUNS = re.compile(r"\n{3,}")
_WHITESPACE = re.compile(r"\s+")

# Markdown syntax removed when judging whether a chunk is "mostly markup".
_MD_HEADERS = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_MD_EMPHASIS = re.compile(r"(\*\*|__|\*|_|~~|`{1,3})")
_MD_LINKS = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
_MD_LIST_MARKERS = re.compile(r"^\s*(?:[-*+]|\d+\.)\s+", re.MULTILINE)
_MD_RULES_AND_QUOTES = re.compile(r"^\s*(?:>+|[-*_]{3,}|\|)", re.MULTILINE)
_MD_TABLE_PIPES = re.compile(r"\|")

# Word characters, whitespace, Arabic (U+0600–U+06FF), Arabic supplement,
# Arabic presentation forms and ZWNJ (U+200C, used in Persian).
_QUERY_DISALLOWED = re.compile(
    r"[^\w\s\u0600-\u06FF\u0750-\u077F\uFB50-\uFDFF\uFE70-\uFEFF\u200C]"
)

MAX_QUERY_LENGTH = 500


def preprocess_markdown(text: str) -> str:
    """Prepare raw markdown/text for chunking.

    Removes HTML comments and control characters, normalises CRLF/CR line
    endings, collapses three or more newlines to a paragraph break and
    trims surrounding whitespace.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HTML_COMMENT.sub("", text)
    text = _CONTROL_CHARS.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()


def strip_markdown(text: str) -> str:
    """Return *text* with markdown syntax removed and whitespace collapsed."""
    text = _MD_LINKS.sub(r"\1", text)
    text = _MD_HEADERS.sub("", text)
    text = _MD_LIST_MARKERS.sub("", text)
    text = _MD_RULES_AND_QUOTES.sub("", text)
    text = _MD_EMPHASIS.sub("", text)
    text = _MD_TABLE_PIPES.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def is_mostly_markdown(text: str, min_ratio: float = 0.3) -> bool:
    """Return ``True`` if less than *min_ratio* of *text* survives :func:`strip_markdown`."""
    stripped = text.strip()
    if not stripped:
        return True
    return len(strip_markdown(stripped)) < len(stripped) * min_ratio


def normalize_query(query: str, max_length: int = MAX_QUERY_LENGTH) -> str:
    """Normalise a search query for cache keys and keyword matching.

    Args:
        query: Raw user query.
        max_length: Maximum length of the returned string.

    Returns:
        Lower-cased query with punctuation removed (Arabic/Persian script
        kept), whitespace collapsed, capped at *max_length* characters.
    """
    if not query:
        return ""
    text = _QUERY_DISALLOWED.sub(" ", query.lower())
    text = _WHITESPACE.sub(" ", text).strip()
    return text[:max_length].rstrip()


def query_terms(normalized_query: str, min_length: int = 3) -> list[str]:
    """Split a normalised query into de-duplicated keyword terms.

    Terms shorter than *min_length* characters are dropped; order of first
    appearance is preserved.
    """
    seen: dict[str, None] = {}
    for word in normalized_query.split():
        if len(word) >= min_length:
            seen.setdefault(word, None)
    return list(seen)


def word_count(text: str) -> int:
    return len(text.split())
