"""Tests for the tenant-scoped Qdrant client, filters and embeddings."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http import models as rest_models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from groundwork.core.config import EmbeddingConfig, VectorDBConfig
from groundwork.core.errors import RetrievalError
from groundwork.core.types import Query, SectionMatchMode, SectionPathFilter
from groundwork.vectordb.embeddings import (
    HashEmbedding,
    OllamaEmbedding,
    create_embedding_provider,
)
from groundwork.vectordb.filters import build_filter, keyword_filter
from groundwork.vectordb.store import QdrantStore

EMBED_URL = "http://localhost:11434/api/embeddings"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _config(**overrides) -> VectorDBConfig:
    defaults = {"url": "http://qdrant.test:6333", "collection": "docs_v1"}
    defaults.update(overrides)
    return VectorDBConfig(**defaults)


def _query(**overrides) -> Query:
    defaults = {"text": "What is in block 9?", "tenant_id": "zenithfall", "top_k": 5}
    defaults.update(overrides)
    return Query(**defaults)


def _payload(point_id, tenant, section_path, content, extra) -> dict:
    payload = {
        "tenant": tenant,
        "docId": f"doc-{point_id}",
        "chunkId": f"chunk-{point_id}",
        "sectionPath": section_path,
        "content": content,
    }
    payload.update(extra)
    return payload


def _hit(point_id, tenant, section_path, score=0.8, content="text", **extra) -> models.ScoredPoint:
    return models.ScoredPoint(
        id=point_id,
        version=0,
        score=score,
        payload=_payload(point_id, tenant, section_path, content, extra),
    )


def _record(point_id, tenant, section_path, content="text", vector=None, **extra) -> models.Record:
    return models.Record(
        id=point_id,
        payload=_payload(point_id, tenant, section_path, content, extra),
        vector=vector,
    )


def _tenant_condition(tenant: str = "zenithfall") -> models.FieldCondition:
    return models.FieldCondition(key="tenant", match=models.MatchValue(value=tenant))


def _unexpected(status: int, body: bytes = b"") -> UnexpectedResponse:
    return UnexpectedResponse(
        status_code=status,
        reason_phrase="error",
        content=body,
        headers=httpx.Headers(),
    )


@pytest.fixture
def qdrant():
    """An AsyncQdrantClient double that returns no points."""
    client = MagicMock(spec=AsyncQdrantClient)
    client.query_points = AsyncMock(return_value=rest_models.QueryResponse(points=[]))
    client.scroll = AsyncMock(return_value=([], None))
    client.close = AsyncMock()
    return client


@pytest.fixture
def store(qdrant):
    return QdrantStore(_config(), client=qdrant)


# ---------------------------------------------------------------------------
# Section path filter model
# ---------------------------------------------------------------------------

class TestSectionPathFilter:
    def test_any_matches_segment_membership(self):
        f = SectionPathFilter(mode=SectionMatchMode.ANY, values=("block_9",))
        assert f.matches(("block_9", "table_2"))
        assert f.matches(("intro", "block_9"))
        assert not f.matches(("block_90",))

    def test_prefix_respects_segment_boundary(self):
        f = SectionPathFilter(mode=SectionMatchMode.PREFIX, values=("block_9",))
        assert f.matches(("block_9",))
        assert f.matches(("block_9", "table_2"))
        assert not f.matches(("block_90", "table_2"))
        assert not f.matches(("intro", "block_9"))

    def test_multi_segment_prefix(self):
        f = SectionPathFilter(mode=SectionMatchMode.PREFIX, values=("block_9/table_2",))
        assert f.matches(("block_9", "table_2", "row_1"))
        assert not f.matches(("block_9", "table_20"))

    def test_shorthand_any(self):
        f = SectionPathFilter.model_validate({"any": ["block_9"]})
        assert f.mode is SectionMatchMode.ANY
        assert f.values == ("block_9",)

    def test_shorthand_prefix_string(self):
        f = SectionPathFilter.model_validate({"prefix": "block_9"})
        assert f.mode is SectionMatchMode.PREFIX
        assert f.values == ("block_9",)


# ---------------------------------------------------------------------------
# Filter construction
# ---------------------------------------------------------------------------

class TestBuildFilter:
    def test_tenant_always_first(self):
        flt = build_filter(_query())
        assert flt == models.Filter(must=[_tenant_condition()])

    def test_missing_tenant_raises(self):
        with pytest.raises(ValueError, match="tenant_id is required"):
            build_filter(_query(tenant_id=""))

    def test_optional_conditions_are_conjunctive(self):
        flt = build_filter(
            _query(doc_id="doc-1", group_ids=("finance",), language="en")
        )
        assert flt.must == [
            _tenant_condition(),
            models.FieldCondition(key="docId", match=models.MatchValue(value="doc-1")),
            models.FieldCondition(key="acl", match=models.MatchAny(any=["finance"])),
            models.FieldCondition(key="lang", match=models.MatchValue(value="en")),
        ]

    def test_any_section_filter(self):
        section = SectionPathFilter(mode=SectionMatchMode.ANY, values=("block_9", "block_10"))
        flt = build_filter(_query(section_path=section))
        assert flt.must[-1] == models.FieldCondition(
            key="sectionPath", match=models.MatchAny(any=["block_9", "block_10"])
        )

    def test_single_prefix_section_filter(self):
        section = SectionPathFilter(mode=SectionMatchMode.PREFIX, values=("block_9",))
        flt = build_filter(_query(section_path=section))
        assert flt.must[-1] == models.FieldCondition(
            key="sectionPathText", match=models.MatchText(text="block_9")
        )

    def test_multiple_prefixes_become_should(self):
        section = SectionPathFilter(mode=SectionMatchMode.PREFIX, values=("block_9", "block_11"))
        flt = build_filter(_query(section_path=section))
        assert flt.must[-1] == models.Filter(
            should=[
                models.FieldCondition(key="sectionPathText", match=models.MatchText(text="block_9")),
                models.FieldCondition(key="sectionPathText", match=models.MatchText(text="block_11")),
            ]
        )

    def test_field_names_are_configurable(self):
        cfg = _config(tenant_field="org", section_path_field="path")
        section = SectionPathFilter(mode=SectionMatchMode.ANY, values=("a",))
        flt = build_filter(_query(section_path=section), cfg)
        assert flt.must[0].key == "org"
        assert flt.must[1].key == "path"

    def test_keyword_filter_keeps_tenant_and_ors_terms(self):
        flt = keyword_filter(_query(), ["revenue", "quarter"])
        assert flt.must == [_tenant_condition()]
        assert flt.should == [
            models.FieldCondition(key="content", match=models.MatchText(text="revenue")),
            models.FieldCondition(key="content", match=models.MatchText(text="quarter")),
        ]


# ---------------------------------------------------------------------------
# QdrantStore.search
# ---------------------------------------------------------------------------

class TestQdrantSearch:
    @pytest.mark.asyncio
    async def test_search_request_shape(self, store, qdrant):
        await store.search(_query(), [0.1, 0.2], top_k=3)

        kwargs = qdrant.query_points.await_args.kwargs
        assert kwargs["collection_name"] == "docs_v1"
        assert kwargs["query"] == [0.1, 0.2]
        assert kwargs["limit"] == 3
        assert kwargs["with_payload"] is True
        assert kwargs["query_filter"].must[0] == _tenant_condition()

    @pytest.mark.asyncio
    async def test_hits_become_chunks(self, store, qdrant):
        qdrant.query_points.return_value = rest_models.QueryResponse(
            points=[
                _hit(1, "zenithfall", ["block_9", "table_2"], score=0.91,
                     content="Revenue was $125.3 million", title="Q3 Report"),
            ]
        )
        chunks = await store.search(_query(), [0.0])

        assert len(chunks) == 1
        chunk = chunks[0]
        assert chunk.chunk_id == "chunk-1"
        assert chunk.doc_id == "doc-1"
        assert chunk.section_path == ("block_9", "table_2")
        assert chunk.score == 0.91
        assert chunk.tenant_id == "zenithfall"
        assert chunk.metadata == {"title": "Q3 Report"}

    @pytest.mark.asyncio
    async def test_string_section_path_is_split(self, store, qdrant):
        qdrant.query_points.return_value = rest_models.QueryResponse(
            points=[_hit(1, "zenithfall", "block_9/table_2")]
        )
        chunks = await store.search(_query(), [0.0])
        assert chunks[0].section_path == ("block_9", "table_2")

    @pytest.mark.asyncio
    async def test_point_id_used_when_chunk_id_missing(self, store, qdrant):
        point = models.ScoredPoint(
            id="p-7", version=0, score=0.5, payload={"tenant": "zenithfall", "content": "x"}
        )
        qdrant.query_points.return_value = rest_models.QueryResponse(points=[point])
        chunks = await store.search(_query(), [0.0])
        assert chunks[0].chunk_id == "p-7"
        assert chunks[0].doc_id == "p-7"

    @pytest.mark.asyncio
    async def test_zenithfall_block_9_scenario(self, store, qdrant):
        """Only zenithfall chunks under block_9 survive, whatever the store returns."""
        qdrant.query_points.return_value = rest_models.QueryResponse(
            points=[
                _hit(1, "zenithfall", ["block_9", "table_2"], score=0.9),
                _hit(2, "otherco", ["block_9"], score=0.95),
                _hit(3, "zenithfall", ["block_90"], score=0.85),
                _hit(4, "zenithfall", ["block_9"], score=0.7),
            ]
        )
        section = SectionPathFilter.model_validate({"any": ["block_9"]})
        chunks = await store.search(_query(section_path=section), [0.0])

        assert [c.chunk_id for c in chunks] == ["chunk-1", "chunk-4"]
        assert all(c.tenant_id == "zenithfall" for c in chunks)
        assert all("block_9" in c.section_path for c in chunks)

        query_filter = qdrant.query_points.await_args.kwargs["query_filter"]
        assert models.FieldCondition(
            key="sectionPath", match=models.MatchAny(any=["block_9"])
        ) in query_filter.must

    @pytest.mark.asyncio
    async def test_retries_once_on_5xx(self, store, qdrant):
        qdrant.query_points.side_effect = [
            _unexpected(503),
            rest_models.QueryResponse(points=[_hit(1, "zenithfall", [])]),
        ]
        chunks = await store.search(_query(), [0.0])
        assert len(chunks) == 1
        assert qdrant.query_points.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_transport_error_raises(self, store, qdrant):
        qdrant.query_points.side_effect = ResponseHandlingException(httpx.ConnectError("refused"))
        with pytest.raises(RetrievalError) as exc_info:
            await store.search(_query(), [0.0])
        assert exc_info.value.code == "RETRIEVAL_FAILED"
        assert qdrant.query_points.await_count == 2

    @pytest.mark.asyncio
    async def test_timeout_raises_retrieval_timeout(self, qdrant):
        qdrant.query_points.side_effect = ResponseHandlingException(httpx.ReadTimeout("slow"))
        store = QdrantStore(_config(max_retries=0), client=qdrant)
        with pytest.raises(RetrievalError) as exc_info:
            await store.search(_query(), [0.0])
        assert exc_info.value.code == "RETRIEVAL_TIMEOUT"
        assert qdrant.query_points.await_count == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, store, qdrant):
        qdrant.query_points.side_effect = _unexpected(400, b"bad filter")
        with pytest.raises(RetrievalError) as exc_info:
            await store.search(_query(), [0.0])
        assert exc_info.value.details == {"status_code": 400, "body": "bad filter"}
        assert qdrant.query_points.await_count == 1

    @pytest.mark.asyncio
    async def test_close_closes_client(self, store, qdrant):
        await store.close()
        qdrant.close.assert_awaited_once()


# ---------------------------------------------------------------------------
# QdrantStore.keyword_search
# ---------------------------------------------------------------------------

class TestQdrantKeywordSearch:
    @pytest.mark.asyncio
    async def test_scroll_matches_any_term(self, store, qdrant):
        await store.keyword_search(_query(), ["revenue", "million"], limit=20)

        kwargs = qdrant.scroll.await_args.kwargs
        assert kwargs["limit"] == 20
        assert kwargs["with_vectors"] is False
        assert kwargs["scroll_filter"].must == [_tenant_condition()]
        assert [c.match.text for c in kwargs["scroll_filter"].should] == ["revenue", "million"]

    @pytest.mark.asyncio
    async def test_scored_by_cosine_to_query_vector(self, store, qdrant):
        qdrant.scroll.return_value = (
            [
                _record(1, "zenithfall", [], vector=[1.0, 0.0]),
                _record(2, "zenithfall", [], vector=[1.0, 1.0]),
            ],
            None,
        )
        chunks = await store.keyword_search(_query(), ["revenue"], vector=[1.0, 0.0])

        assert qdrant.scroll.await_args.kwargs["with_vectors"] is True
        assert chunks[0].score == pytest.approx(1.0)
        assert chunks[1].score == pytest.approx(0.7071, abs=1e-4)

    @pytest.mark.asyncio
    async def test_foreign_tenant_dropped(self, store, qdrant):
        qdrant.scroll.return_value = (
            [_record(1, "otherco", []), _record(2, "zenithfall", [])],
            None,
        )
        chunks = await store.keyword_search(_query(), ["revenue"])
        assert [c.chunk_id for c in chunks] == ["chunk-2"]
        assert chunks[0].score == 0.0

    @pytest.mark.asyncio
    async def test_no_terms_skips_the_store(self, store, qdrant):
        assert await store.keyword_search(_query(), []) == []
        qdrant.scroll.assert_not_awaited()


# ---------------------------------------------------------------------------
# QdrantStore.fetch_section
# ---------------------------------------------------------------------------

class TestQdrantFetchSection:
    @pytest.mark.asyncio
    async def test_scroll_uses_prefix_filter(self, store, qdrant):
        qdrant.scroll.return_value = (
            [
                _record(5, "zenithfall", ["block_9", "table_1"]),
                _record(6, "zenithfall", ["block_90", "table_1"]),
            ],
            None,
        )
        chunks = await store.fetch_section(_query(), "block_9", limit=10)

        assert [c.chunk_id for c in chunks] == ["chunk-5"]
        assert chunks[0].score == 0.0
        kwargs = qdrant.scroll.await_args.kwargs
        assert kwargs["limit"] == 10
        assert models.FieldCondition(
            key="sectionPathText", match=models.MatchText(text="block_9")
        ) in kwargs["scroll_filter"].must


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class TestEmbeddings:
    @pytest.mark.asyncio
    async def test_hash_embedding_is_deterministic(self):
        emb = HashEmbedding(dimensions=16)
        first = await emb.embed("hello")
        second = await emb.embed("hello")
        assert first == second
        assert len(first) == 16
        assert first != await emb.embed("goodbye")

    @pytest.mark.asyncio
    async def test_ollama_embedding(self, httpx_mock):
        httpx_mock.add_response(url=EMBED_URL, method="POST", json={"embedding": [0.1, 0.2, 0.3]})
        emb = OllamaEmbedding(EmbeddingConfig(base_url="http://localhost:11434"))
        try:
            assert await emb.embed("hi") == [0.1, 0.2, 0.3]
        finally:
            await emb.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [b'{"error": "model not found"}', b"<html>proxy error</html>", b'{"embedding": null}'],
    )
    async def test_ollama_malformed_body_is_retrieval_error(self, httpx_mock, body):
        httpx_mock.add_response(url=EMBED_URL, method="POST", content=body)
        emb = OllamaEmbedding(EmbeddingConfig(base_url="http://localhost:11434"))
        try:
            with pytest.raises(RetrievalError) as exc_info:
                await emb.embed("hi")
        finally:
            await emb.close()
        assert exc_info.value.code == "RETRIEVAL_FAILED"

    @pytest.mark.asyncio
    async def test_ollama_retries_once_on_5xx(self, httpx_mock):
        httpx_mock.add_response(url=EMBED_URL, method="POST", status_code=503)
        httpx_mock.add_response(url=EMBED_URL, method="POST", json={"embedding": [0.5]})
        emb = OllamaEmbedding(EmbeddingConfig(base_url="http://localhost:11434"))
        try:
            assert await emb.embed("hi") == [0.5]
        finally:
            await emb.close()
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_ollama_persistent_timeout(self, httpx_mock):
        httpx_mock.add_exception(httpx.ReadTimeout("slow"), url=EMBED_URL)
        httpx_mock.add_exception(httpx.ReadTimeout("slow"), url=EMBED_URL)
        emb = OllamaEmbedding(EmbeddingConfig(base_url="http://localhost:11434"))
        try:
            with pytest.raises(RetrievalError) as exc_info:
                await emb.embed("hi")
        finally:
            await emb.close()
        assert exc_info.value.code == "RETRIEVAL_TIMEOUT"

    @pytest.mark.asyncio
    async def test_ollama_client_error_not_retried(self, httpx_mock):
        httpx_mock.add_response(url=EMBED_URL, method="POST", status_code=404, text="no model")
        emb = OllamaEmbedding(EmbeddingConfig(base_url="http://localhost:11434"))
        try:
            with pytest.raises(RetrievalError) as exc_info:
                await emb.embed("hi")
        finally:
            await emb.close()
        assert exc_info.value.details["status_code"] == 404

    def test_factory(self):
        assert isinstance(create_embedding_provider(EmbeddingConfig(provider="hash")), HashEmbedding)
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            create_embedding_provider(EmbeddingConfig(provider="nope"))
