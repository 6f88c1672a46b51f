"""Pure ranking functions for retrieval candidates.

Each candidate starts from its cosine similarity and picks up additive
signals:

    final = similarity
          + keyword_weight * (matched query terms / query terms)
          - diversity_weight * (chunks already picked from the same document)
          + recency_weight * (1 - min(age / recency_window, 1))
          + phrase_weight  if the whole query appears verbatim
          + bigram_weight * (query bigrams present / query bigrams)

Only the direction of each signal is load-bearing: more matched terms,
newer documents, phrase hits never lower a score; repeated documents never
raise one.  The functions take and return plain dicts so they can run in a
worker process without pickling pydantic models.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from docrag.models.retrieval import SearchOptions
from docrag.utils.text_normalizer import normalize_query, query_terms


def keyword_bonus(content: str, terms: list[str], weight: float) -> float:
    if not terms:
        return 0.0
    lowered = content.lower()
    matched = sum(1 for term in terms if term in lowered)
    return weight * matched / len(terms)


def keyword_coverage(contents: Iterable[str], terms: list[str]) -> float:
    """Fraction of *terms* found in at least one of *contents*."""
    if not terms:
        return 0.0
    joined = " ".join(c.lower() for c in contents)
    return sum(1 for term in terms if term in joined) / len(terms)


def recency_bonus(
    created_at: datetime | str | None,
    weight: float,
    window_days: float,
    now: datetime | None = None,
) -> float:
    if created_at is None or weight == 0:
        return 0.0
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, (now - created_at).total_seconds() / 86400)
    return weight * (1.0 - min(age_days / window_days, 1.0))


def rerank_bonus(content: str, normalized_query: str, phrase_weight: float, bigram_weight: float) -> float:
    if not normalized_query:
        return 0.0
    lowered = normalize_query(content, max_length=len(content) + 1)
    bonus = phrase_weight if normalized_query in lowered else 0.0
    words = normalized_query.split()
    bigrams = [f"{a} {b}" for a, b in zip(words, words[1:])]
    if bigrams:
        bonus += bigram_weight * sum(1 for bg in bigrams if bg in lowered) / len(bigrams)
    return bonus


def rank_candidates(
    query: str,
    candidates: list[dict[str, Any]],
    options: SearchOptions,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Score and order candidates, returning at most ``options.max_chunks``.

    Candidates below ``options.similarity_threshold`` or shorter than
    ``options.min_chunk_length`` are dropped first.  The diversity penalty
    is applied greedily: candidates are taken in base-score order and each
    one is penalised for the chunks of its document already taken.
    """
    normalized = normalize_query(query)
    terms = query_terms(normalized)

    eligible = [
        c
        for c in candidates
        if c["similarity"] >= options.similarity_threshold
        and len(c["content"].strip()) >= options.min_chunk_length
    ]

    scored: list[tuple[float, dict[str, Any]]] = []
    for candidate in eligible:
        score = candidate["similarity"]
        score += keyword_bonus(candidate["content"], terms, options.keyword_weight)
        if options.temporal_boost:
            score += recency_bonus(
                candidate.get("document_created_at"),
                options.recency_weight,
                options.recency_window_days,
                now,
            )
        if options.rerank:
            score += rerank_bonus(
                candidate["content"], normalized, options.phrase_weight, options.bigram_weight
            )
        scored.append((score, candidate))
    scored.sort(key=lambda item: (item[0], item[1]["similarity"]), reverse=True)

    if options.diversity_boost:
        picked_per_doc: dict[str, int] = {}
        adjusted: list[tuple[float, dict[str, Any]]] = []
        for score, candidate in scored:
            prior = picked_per_doc.get(candidate["document_id"], 0)
            adjusted.append((score - options.diversity_weight * prior, candidate))
            picked_per_doc[candidate["document_id"]] = prior + 1
        scored = sorted(adjusted, key=lambda item: (item[0], item[1]["similarity"]), reverse=True)

    return [
        {**candidate, "final_score": round(score, 6)}
        for score, candidate in scored[: options.max_chunks]
    ]


def quality_score(similarities: list[float], coverage: float, target_chunks: int = 8) -> float:
    """Overall confidence in a result set, in ``[0, 1]``."""
    if not similarities:
        return 0.0
    mean = sum(similarities) / len(similarities)
    score = mean + 0.1 * min(len(similarities) / target_chunks, 1.0) + 0.1 * coverage
    return max(0.0, min(1.0, score))
