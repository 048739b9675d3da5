"""Lightweight re-ranking of retrieved chunks.

Re-scores candidates using a combination of vector similarity and keyword
overlap with the query. This avoids needing external models while still
improving relevance over pure vector search.
"""

from __future__ import annotations

from groundwork.core.types import EvidenceChunk
from groundwork.rag.fusion import keyword_overlap, query_terms


def _content_quality(text: str) -> float:
    """Heuristic quality score (0-1) based on length and information density."""
    if not text:
        return 0.0
    length_score = min(len(text) / 800, 1.0)  # Prefer substantial chunks
    alpha_ratio = sum(1 for c in text if c.isalpha()) / max(len(text), 1)
    return 0.5 * length_score + 0.5 * alpha_ratio


def rerank(
    query: str,
    chunks: list[EvidenceChunk],
    final_count: int = 5,
    vector_weight: float = 0.5,
    keyword_weight: float = 0.35,
    quality_weight: float = 0.15,
) -> list[EvidenceChunk]:
    """Re-rank chunks using a weighted scoring formula.

    Score = vector_weight * similarity + keyword_weight * keyword_overlap
            + quality_weight * content_quality

    Args:
        query: The original question.
        chunks: Candidate chunks.
        final_count: Number of chunks to return.
        vector_weight: Weight for the vector similarity score.
        keyword_weight: Weight for keyword overlap.
        quality_weight: Weight for content quality.

    Returns:
        Top ``final_count`` chunks, re-ranked by combined score, which
        replaces their similarity score.
    """
    if len(chunks) <= final_count:
        return chunks

    terms = query_terms(query)

    scored: list[tuple[float, EvidenceChunk]] = []
    for chunk in chunks:
        combined = (
            vector_weight * chunk.score
            + keyword_weight * keyword_overlap(terms, chunk.content)
            + quality_weight * _content_quality(chunk.content)
        )
        scored.append((combined, chunk))

    scored.sort(key=lambda x: (-x[0], x[1].chunk_id))
    return [chunk.model_copy(update={"score": score}) for score, chunk in scored[:final_count]]
