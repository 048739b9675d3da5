"""Evidence aggregation: dedupe, rank and fit retrieved chunks to a budget."""

from __future__ import annotations

import logging

from groundwork.core.config import AggregatorConfig
from groundwork.core.types import EvidenceChunk, EvidenceSet

logger = logging.getLogger(__name__)


def rank_key(chunk: EvidenceChunk) -> tuple[float, str]:
    """Sort key: score descending, then chunk id ascending."""
    return (-chunk.score, chunk.chunk_id)


def dedupe(chunks: list[EvidenceChunk]) -> list[EvidenceChunk]:
    """Collapse repeated chunk ids.

    A later duplicate replaces the kept one only when its score is strictly
    higher, so ties always keep the first-seen copy.
    """
    kept: dict[str, EvidenceChunk] = {}
    for chunk in chunks:
        current = kept.get(chunk.chunk_id)
        if current is None or chunk.score > current.score:
            kept[chunk.chunk_id] = chunk
    return list(kept.values())


class EvidenceAggregator:
    """Turns raw retrieval hits into an EvidenceSet.

    Args:
        config: AggregatorConfig with the default character budget.
    """

    def __init__(self, config: AggregatorConfig | None = None) -> None:
        self.config = config or AggregatorConfig()

    def aggregate(
        self,
        raw_chunks: list[EvidenceChunk],
        tenant_id: str,
        max_context_chars: int | None = None,
    ) -> EvidenceSet:
        """Dedupe, sort and truncate *raw_chunks*.

        Truncation drops whole chunks from the low end of the ranking until
        the remaining content fits the budget; a retained chunk is never cut.

        Raises:
            ValueError: If any chunk belongs to a tenant other than *tenant_id*.
        """
        foreign = [c.chunk_id for c in raw_chunks if c.tenant_id != tenant_id]
        if foreign:
            raise ValueError(
                f"Evidence for tenant {tenant_id!r} contains foreign chunks: {foreign}"
            )

        budget = max_context_chars or self.config.max_context_chars
        ranked = sorted(dedupe(raw_chunks), key=rank_key)

        kept: list[EvidenceChunk] = []
        used = 0
        for chunk in ranked:
            if len(kept) >= self.config.max_chunks:
                break
            size = len(chunk.content)
            if used + size > budget:
                break
            kept.append(chunk)
            used += size

        truncated = len(kept) < len(ranked)
        if truncated:
            logger.debug(
                "Evidence truncated from %d to %d chunks (%d/%d chars)",
                len(ranked), len(kept), used, budget,
            )

        return EvidenceSet(
            tenant_id=tenant_id,
            chunks=kept,
            truncated=truncated,
            total_chars=used,
        )
