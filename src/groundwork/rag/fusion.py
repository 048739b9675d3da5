"""Keyword terms and reciprocal rank fusion for hybrid retrieval.

The keyword pass finds chunks that contain the query's terms; the vector
pass finds chunks that are semantically close. Reciprocal rank fusion
merges the two rankings without comparing their scores.
"""

from __future__ import annotations

import re
from collections import Counter

from groundwork.core.types import EvidenceChunk

_STOPWORDS = frozenset(
    {"what", "is", "the", "of", "a", "an", "and", "or", "but", "in", "on", "at",
     "to", "for", "with", "by", "was", "were", "are", "how", "who", "which", "does"}
)


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric tokens."""
    return re.findall(r"[a-zA-Z0-9]+", text.lower())


def query_terms(text: str) -> list[str]:
    """Distinct search terms of *text*, in order, without stopwords or short tokens."""
    seen: dict[str, None] = {}
    for token in tokenize(text):
        if len(token) > 2 and token not in _STOPWORDS:
            seen.setdefault(token)
    return list(seen)


def keyword_overlap(terms: list[str], content: str) -> float:
    """Fraction of *terms* found in *content* (0-1)."""
    if not terms:
        return 0.0
    counts = Counter(tokenize(content))
    return sum(1 for t in set(terms) if counts[t] > 0) / len(set(terms))


def rank_by_overlap(terms: list[str], chunks: list[EvidenceChunk]) -> list[EvidenceChunk]:
    """Order keyword hits by how many query terms they contain."""
    return sorted(
        chunks,
        key=lambda c: (-keyword_overlap(terms, c.content), -c.score, c.chunk_id),
    )


def reciprocal_rank_fusion(
    vector_hits: list[EvidenceChunk],
    keyword_hits: list[EvidenceChunk],
    *,
    k: int = 60,
    vector_weight: float = 0.7,
    keyword_weight: float = 0.3,
    limit: int | None = None,
) -> list[EvidenceChunk]:
    """Merge two rankings by weighted reciprocal rank.

    Each chunk scores ``weight / (k + rank)`` in every list it appears in,
    with ranks starting at 1. The fused score only decides membership and
    order; each chunk keeps its similarity score, taken from the vector
    hit when the chunk appears in both lists.

    Returns:
        At most *limit* chunks, best first. Ties go to the lower chunk id.
    """
    fused: dict[str, float] = {}
    chunks: dict[str, EvidenceChunk] = {}

    for weight, hits in ((vector_weight, vector_hits), (keyword_weight, keyword_hits)):
        for rank, chunk in enumerate(hits, 1):
            fused[chunk.chunk_id] = fused.get(chunk.chunk_id, 0.0) + weight / (k + rank)
            chunks.setdefault(chunk.chunk_id, chunk)

    order = sorted(fused, key=lambda cid: (-fused[cid], cid))
    if limit is not None:
        order = order[:limit]
    return [chunks[cid] for cid in order]
