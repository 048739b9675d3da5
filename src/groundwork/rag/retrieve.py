"""Retrieval for Groundwork RAG.

Embeds the question, runs a tenant-filtered vector search, optionally
fuses it with a keyword search and reranks, and returns raw scored
chunks. Aggregation happens downstream.
"""

from __future__ import annotations

import asyncio
import logging

from groundwork.core.config import RetrievalConfig
from groundwork.core.errors import RetrievalError
from groundwork.core.types import EvidenceChunk, Query
from groundwork.rag.fusion import query_terms, rank_by_overlap, reciprocal_rank_fusion
from groundwork.rag.rerank import rerank
from groundwork.vectordb.embeddings import EmbeddingProvider
from groundwork.vectordb.store import QdrantStore

logger = logging.getLogger(__name__)


class Retriever:
    """Retrieval layer over a QdrantStore.

    Args:
        store: The vector store to query.
        embedder: Produces the query vector.
        timeout_seconds: Upper bound for embed + search together. Exceeding
            it fails the whole query with ``RetrievalError``.
        config: Hybrid search and reranking settings.
    """

    def __init__(
        self,
        store: QdrantStore,
        embedder: EmbeddingProvider,
        timeout_seconds: float | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._timeout = timeout_seconds
        self.config = config or RetrievalConfig()

    async def retrieve(self, query: Query) -> list[EvidenceChunk]:
        """Retrieve candidate chunks for *query*.

        Returns:
            Chunks in store order; possibly empty when nothing matched.

        Raises:
            RetrievalError: If embedding or search fails or times out. An
                empty result is never reported this way.
        """
        try:
            return await asyncio.wait_for(self._retrieve(query), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise RetrievalError(
                f"Retrieval exceeded {self._timeout}s",
                code="RETRIEVAL_TIMEOUT",
            ) from exc

    async def retrieve_with_siblings(
        self,
        query: Query,
        sibling_decay: float = 0.9,
        max_siblings: int = 20,
    ) -> list[EvidenceChunk]:
        """Retrieve chunks and pull in the rest of each hit's top-level section.

        For each primary hit with a section path, every chunk under the same
        first path segment (e.g. all of ``block_9``) is fetched. Siblings
        inherit the hit's score times *sibling_decay* so they rank just below
        the passage that led to them. Primary hits come first; downstream
        deduplication keeps the higher score for repeated chunk ids.
        """
        primary = await self.retrieve(query)
        sections: dict[str, float] = {}
        for chunk in primary:
            if chunk.section_path:
                head = chunk.section_path[0]
                sections[head] = max(sections.get(head, 0.0), chunk.score)

        if not sections:
            return primary

        async def _fetch(head: str) -> list[EvidenceChunk]:
            return await self._store.fetch_section(query, head, limit=max_siblings)

        try:
            fetched = await asyncio.wait_for(
                asyncio.gather(*(_fetch(head) for head in sections)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise RetrievalError(
                f"Section expansion exceeded {self._timeout}s",
                code="RETRIEVAL_TIMEOUT",
            ) from exc

        expanded = list(primary)
        for head, siblings in zip(sections, fetched):
            parent_score = sections[head] * sibling_decay
            expanded.extend(s.model_copy(update={"score": parent_score}) for s in siblings)
        return expanded

    async def _retrieve(self, query: Query) -> list[EvidenceChunk]:
        vector = await self._embedder.embed(query.text)
        terms = query_terms(query.text) if self.config.hybrid else []

        if terms:
            vector_hits, keyword_hits = await asyncio.gather(
                self._store.search(query, vector, top_k=query.top_k),
                self._store.keyword_search(
                    query, terms, vector=vector, limit=self.config.keyword_limit
                ),
            )
            chunks = reciprocal_rank_fusion(
                vector_hits,
                rank_by_overlap(terms, keyword_hits),
                k=self.config.rrf_k,
                vector_weight=self.config.vector_weight,
                keyword_weight=self.config.keyword_weight,
                limit=query.top_k,
            )
            logger.debug(
                "Fused %d vector and %d keyword hits into %d",
                len(vector_hits), len(keyword_hits), len(chunks),
            )
        else:
            chunks = await self._store.search(query, vector, top_k=query.top_k)

        if self.config.rerank:
            chunks = rerank(query.text, chunks, final_count=query.top_k)

        logger.info(
            "Retrieved %d chunks for tenant %s (top_k=%d)",
            len(chunks), query.tenant_id, query.top_k,
        )
        return chunks

    async def close(self) -> None:
        await self._store.close()
        await self._embedder.close()
