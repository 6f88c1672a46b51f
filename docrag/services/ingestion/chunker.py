"""Token-window text chunking with fixed overlap.

Splits document text into :class:`~docrag.models.document.TextChunk`
windows sized for embedding models (400 tokens with a 40-token overlap by
default).

Windows are built from whitespace-delimited pieces (each piece is a word
plus the whitespace in front of it), so a chunk never starts or ends
mid-word and paragraph breaks inside a chunk survive.  Guarantees:

* every chunk has at most ``chunk_size`` tokens, except that a final
  remainder smaller than ``min_tokens`` is absorbed into the last window
  instead of becoming a runt chunk;
* consecutive chunks share the last ``overlap`` tokens of the earlier
  one (at piece granularity; exact with the whitespace counter);
* indices are contiguous from 0;
* no chunk is shorter than ``min_tokens``.
"""

from __future__ import annotations

import functools
import re
from typing import Protocol

import structlog
import tiktoken

from docrag.models.document import TextChunk
from docrag.utils.text_normalizer import preprocess_markdown

logger = structlog.get_logger(logger_name=__name__)

_PIECE = re.compile(r"\s*\S+")


class TokenCounter(Protocol):
    name: str

    def count(self, text: str) -> int: ...


class WhitespaceTokenCounter:
    """Counts whitespace-separated words. Deterministic and dependency-free."""

    name = "whitespace"

    def count(self, text: str) -> int:
        return len(text.split())


class TiktokenCounter:
    """Counts BPE tokens with a tiktoken encoding (``cl100k_base`` by default)."""

    def __init__(self, encoding: str = "cl100k_base") -> None:
        self._encoding = tiktoken.get_encoding(encoding)
        self.name = f"tiktoken:{encoding}"

    def count(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))


@functools.lru_cache(maxsize=8)
def build_token_counter(kind: str = "tiktoken", encoding: str = "cl100k_base") -> TokenCounter:
    """Return a (cached) token counter for the configured tokenizer kind."""
    if kind == "whitespace":
        return WhitespaceTokenCounter()
    if kind == "tiktoken":
        return TiktokenCounter(encoding)
    raise ValueError(f"Unknown tokenizer kind: {kind!r}")


class TextChunker:
    """Split text into overlapping token windows.

    Parameters
    ----------
    chunk_size:
        Maximum tokens per chunk.
    overlap:
        Tokens shared between consecutive chunks; must be smaller than
        *chunk_size*.
    min_tokens:
        Smallest chunk the chunker will emit.
    counter:
        Token counter; defaults to tiktoken ``cl100k_base``.
    """

    def __init__(
        self,
        chunk_size: int = 400,
        overlap: int = 40,
        min_tokens: int = 5,
        counter: TokenCounter | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= overlap < chunk_size:
            raise ValueError("overlap must be >= 0 and smaller than chunk_size")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_tokens = max(1, min_tokens)
        self._counter = counter or build_token_counter()

    @property
    def counter(self) -> TokenCounter:
        return self._counter

    def chunk(self, text: str) -> list[TextChunk]:
        """Split *text* into chunks; returns ``[]`` if it holds fewer than ``min_tokens`` tokens."""
        text = preprocess_markdown(text)
        pieces = _PIECE.findall(text)
        if not pieces:
            return []
        counts = [self._counter.count(p) for p in pieces]
        if sum(counts) < self.min_tokens:
            return []

        spans: list[tuple[int, int]] = []
        n = len(pieces)
        start = 0
        while start < n:
            end = self._window_end(counts, start)
            next_start = self._overlap_start(counts, start, end)
            if end < n and sum(counts[next_start:]) < self.min_tokens:
                end = n
            spans.append((start, end))
            if end >= n:
                break
            start = next_start

        chunks: list[TextChunk] = []
        for index, (lo, hi) in enumerate(spans):
            content = "".join(pieces[lo:hi]).strip()
            chunks.append(
                TextChunk(content=content, token_count=self._counter.count(content), index=index)
            )

        logger.debug(
            "text_chunked",
            chunks=len(chunks),
            tokens=sum(counts),
            chunk_size=self.chunk_size,
            overlap=self.overlap,
            counter=self._counter.name,
        )
        return chunks

    def _window_end(self, counts: list[int], start: int) -> int:
        total = 0
        end = start
        while end < len(counts) and total + counts[end] <= self.chunk_size:
            total += counts[end]
            end += 1
        # A single piece larger than the window still has to go somewhere.
        return max(end, start + 1)

    def _overlap_start(self, counts: list[int], start: int, end: int) -> int:
        back = end
        shared = 0
        while back > start + 1 and shared + counts[back - 1] <= self.overlap:
            shared += counts[back - 1]
            back -= 1
        return back
