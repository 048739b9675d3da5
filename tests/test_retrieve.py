"""Tests for hybrid retrieval: keyword terms, rank fusion and reranking."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from groundwork.core.config import RetrievalConfig
from groundwork.core.errors import RetrievalError
from groundwork.core.types import EvidenceChunk, Query
from groundwork.rag.fusion import (
    keyword_overlap,
    query_terms,
    rank_by_overlap,
    reciprocal_rank_fusion,
)
from groundwork.rag.rerank import rerank
from groundwork.rag.retrieve import Retriever
from groundwork.vectordb.embeddings import EmbeddingProvider
from groundwork.vectordb.store import QdrantStore


def _chunk(chunk_id: str, score: float = 0.5, content: str = "text") -> EvidenceChunk:
    return EvidenceChunk(
        chunk_id=chunk_id,
        doc_id=f"doc-{chunk_id}",
        content=content,
        score=score,
        tenant_id="acme",
    )


def _query(**overrides) -> Query:
    defaults = {"text": "What was Q3 2023 revenue?", "tenant_id": "acme", "top_k": 3}
    defaults.update(overrides)
    return Query(**defaults)


@pytest.fixture
def store():
    store = MagicMock(spec=QdrantStore)
    store.search = AsyncMock(return_value=[])
    store.keyword_search = AsyncMock(return_value=[])
    store.close = AsyncMock()
    return store


@pytest.fixture
def embedder():
    embedder = MagicMock(spec=EmbeddingProvider)
    embedder.embed = AsyncMock(return_value=[0.1, 0.2])
    embedder.close = AsyncMock()
    return embedder


# ---------------------------------------------------------------------------
# Keyword terms
# ---------------------------------------------------------------------------

class TestQueryTerms:
    def test_drops_stopwords_and_short_tokens(self):
        assert query_terms("What was Q3 2023 revenue?") == ["2023", "revenue"]

    def test_distinct_in_order(self):
        assert query_terms("Revenue, revenue and more REVENUE growth") == [
            "revenue", "more", "growth",
        ]

    def test_keyword_overlap(self):
        assert keyword_overlap(["revenue", "2023"], "Q3 2023 revenue was high") == 1.0
        assert keyword_overlap(["revenue", "costs"], "Revenue rose") == 0.5
        assert keyword_overlap([], "anything") == 0.0

    def test_rank_by_overlap(self):
        hits = [
            _chunk("a", content="costs rose"),
            _chunk("b", content="2023 revenue"),
            _chunk("c", content="revenue"),
        ]
        ranked = rank_by_overlap(["2023", "revenue"], hits)
        assert [c.chunk_id for c in ranked] == ["b", "c", "a"]


# ---------------------------------------------------------------------------
# Reciprocal rank fusion
# ---------------------------------------------------------------------------

class TestReciprocalRankFusion:
    def test_chunk_in_both_lists_moves_up(self):
        vector = [_chunk("a", 0.9), _chunk("b", 0.8), _chunk("c", 0.7)]
        keyword = [_chunk("c", 0.65), _chunk("d", 0.4)]
        fused = reciprocal_rank_fusion(vector, keyword, limit=3)
        assert [c.chunk_id for c in fused] == ["c", "a", "b"]

    def test_scores_are_not_rescaled(self):
        vector = [_chunk("a", 0.9), _chunk("c", 0.7)]
        keyword = [_chunk("c", 0.65), _chunk("d", 0.4)]
        fused = {c.chunk_id: c.score for c in reciprocal_rank_fusion(vector, keyword)}
        assert fused == {"a": 0.9, "c": 0.7, "d": 0.4}

    def test_keyword_only_hits_are_added(self):
        fused = reciprocal_rank_fusion([], [_chunk("k1"), _chunk("k2")])
        assert [c.chunk_id for c in fused] == ["k1", "k2"]

    def test_weights_decide_between_lists(self):
        vector = [_chunk("v")]
        keyword = [_chunk("k")]
        assert reciprocal_rank_fusion(vector, keyword)[0].chunk_id == "v"
        flipped = reciprocal_rank_fusion(vector, keyword, vector_weight=0.2, keyword_weight=0.8)
        assert flipped[0].chunk_id == "k"

    def test_empty(self):
        assert reciprocal_rank_fusion([], []) == []


# ---------------------------------------------------------------------------
# Reranking
# ---------------------------------------------------------------------------

class TestRerank:
    def test_keyword_match_outranks_slightly_closer_vector(self):
        chunks = [
            _chunk("x", 0.80, "Unrelated boilerplate text"),
            _chunk("y", 0.75, "Quarterly revenue growth was strong across all regions"),
            _chunk("z", 0.50, "misc"),
        ]
        reranked = rerank("quarterly revenue growth", chunks, final_count=2)
        assert [c.chunk_id for c in reranked] == ["y", "x"]
        assert reranked[0].score != 0.75

    def test_small_sets_unchanged(self):
        chunks = [_chunk("a", 0.3), _chunk("b", 0.9)]
        assert rerank("anything", chunks, final_count=5) is chunks


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------

class TestRetriever:
    @pytest.mark.asyncio
    async def test_hybrid_fuses_vector_and_keyword_hits(self, store, embedder):
        store.search.return_value = [_chunk("a", 0.9), _chunk("b", 0.8), _chunk("c", 0.7)]
        store.keyword_search.return_value = [
            _chunk("d", 0.4, "nothing relevant"),
            _chunk("c", 0.7, "Q3 2023 revenue was $125.3 million"),
        ]
        retriever = Retriever(store, embedder)

        chunks = await retriever.retrieve(_query())

        assert [c.chunk_id for c in chunks] == ["c", "a", "b"]
        store.keyword_search.assert_awaited_once()
        args, kwargs = store.keyword_search.await_args
        assert args[1] == ["2023", "revenue"]
        assert kwargs["vector"] == [0.1, 0.2]
        assert kwargs["limit"] == 50

    @pytest.mark.asyncio
    async def test_vector_only_when_hybrid_disabled(self, store, embedder):
        store.search.return_value = [_chunk("a", 0.9)]
        retriever = Retriever(store, embedder, config=RetrievalConfig(hybrid=False))

        chunks = await retriever.retrieve(_query())

        assert [c.chunk_id for c in chunks] == ["a"]
        store.keyword_search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_query_without_terms_skips_keyword_pass(self, store, embedder):
        store.search.return_value = [_chunk("a", 0.9)]
        retriever = Retriever(store, embedder)
        await retriever.retrieve(_query(text="What is it?"))
        store.keyword_search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rerank_when_enabled(self, store, embedder):
        store.search.return_value = [
            _chunk("x", 0.80, "Unrelated boilerplate text"),
            _chunk("y", 0.75, "Q3 2023 revenue was $125.3 million"),
            _chunk("z", 0.50, "misc"),
        ]
        retriever = Retriever(
            store, embedder, config=RetrievalConfig(hybrid=False, rerank=True)
        )
        chunks = await retriever.retrieve(_query(top_k=2))
        assert [c.chunk_id for c in chunks] == ["y", "x"]

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, store, embedder):
        embedder.embed.side_effect = RetrievalError("Malformed embedding response")
        retriever = Retriever(store, embedder)
        with pytest.raises(RetrievalError):
            await retriever.retrieve(_query())
        store.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_slow_retrieval_times_out(self, store, embedder):
        async def _slow(text):
            await asyncio.sleep(1)
            return [0.0]

        embedder.embed.side_effect = _slow
        retriever = Retriever(store, embedder, timeout_seconds=0.05)
        with pytest.raises(RetrievalError) as exc_info:
            await retriever.retrieve(_query())
        assert exc_info.value.code == "RETRIEVAL_TIMEOUT"

    @pytest.mark.asyncio
    async def test_close_releases_store_and_embedder(self, store, embedder):
        await Retriever(store, embedder).close()
        store.close.assert_awaited_once()
        embedder.close.assert_awaited_once()
