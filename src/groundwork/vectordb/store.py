"""Tenant-scoped vector store client for Groundwork.

Talks to Qdrant through ``qdrant_client.AsyncQdrantClient``. Every request
carries a tenant filter and every hit is checked again on the way out: a
hit from another tenant or outside the requested section is dropped,
whatever the remote filter semantics turned out to be.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from groundwork.core.config import VectorDBConfig
from groundwork.core.errors import RetrievalError
from groundwork.core.types import (
    EvidenceChunk,
    Query,
    SectionMatchMode,
    SectionPathFilter,
)
from groundwork.vectordb.filters import build_filter, keyword_filter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Payload keys consumed into EvidenceChunk fields rather than metadata.
_RESERVED_KEYS = {"chunkId", "content", "sectionPath", "sectionPathText"}


def _parse_section_path(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return tuple(part for part in raw.split("/") if part)
    return tuple(str(part) for part in raw)


def _cosine(a: list[float], b: Any) -> float:
    if not isinstance(b, list) or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class QdrantStore:
    """Filtered similarity search against one Qdrant collection.

    Args:
        config: VectorDBConfig instance. Defaults to VectorDBConfig().
        client: Optional pre-built ``AsyncQdrantClient``; one is created
            from the config otherwise. The client is shared by all queries.
    """

    def __init__(
        self,
        config: VectorDBConfig | None = None,
        client: AsyncQdrantClient | None = None,
    ) -> None:
        self._config = config or VectorDBConfig()
        self._client = client or AsyncQdrantClient(
            url=self._config.url,
            api_key=self._config.api_key,
            timeout=max(1, math.ceil(self._config.timeout_seconds)),
        )

    @property
    def config(self) -> VectorDBConfig:
        return self._config

    # -- public API ----------------------------------------------------------

    async def search(
        self,
        query: Query,
        vector: list[float],
        top_k: int | None = None,
        section_filter: SectionPathFilter | None = None,
    ) -> list[EvidenceChunk]:
        """Return the *top_k* most similar chunks visible to the query's tenant.

        Raises:
            RetrievalError: On transport failure, timeout or an error status
                that persists after one retry.
        """
        section_filter = section_filter or query.section_path
        query_filter = build_filter(query, self._config, section_filter=section_filter)
        response = await self._call(
            "query_points",
            lambda: self._client.query_points(
                collection_name=self._config.collection,
                query=vector,
                query_filter=query_filter,
                limit=top_k or query.top_k,
                with_payload=True,
            ),
        )
        return self._to_chunks(response.points, query.tenant_id, section_filter)

    async def keyword_search(
        self,
        query: Query,
        terms: list[str],
        vector: list[float] | None = None,
        limit: int = 50,
    ) -> list[EvidenceChunk]:
        """Return chunks whose text contains at least one of *terms*.

        Scroll results have no rank. When *vector* is given each chunk is
        scored by cosine similarity to it, so keyword hits share a scale
        with vector hits; otherwise they score 0.0.
        """
        if not terms:
            return []
        points, _ = await self._call(
            "scroll",
            lambda: self._client.scroll(
                collection_name=self._config.collection,
                scroll_filter=keyword_filter(query, terms, self._config),
                limit=limit,
                with_payload=True,
                with_vectors=vector is not None,
            ),
        )
        return self._to_chunks(points, query.tenant_id, query.section_path, query_vector=vector)

    async def fetch_section(
        self,
        query: Query,
        section_prefix: str,
        limit: int = 100,
    ) -> list[EvidenceChunk]:
        """Gather every chunk under *section_prefix* without a similarity rank.

        Used to pull in the siblings of a matched sub-section (for example all
        chunks of ``block_9``). Returned chunks carry a score of 0.0.
        """
        section_filter = SectionPathFilter(
            mode=SectionMatchMode.PREFIX, values=(section_prefix,)
        )
        points, _ = await self._call(
            "scroll",
            lambda: self._client.scroll(
                collection_name=self._config.collection,
                scroll_filter=build_filter(query, self._config, section_filter=section_filter),
                limit=limit,
                with_payload=True,
                with_vectors=False,
            ),
        )
        return self._to_chunks(points, query.tenant_id, section_filter)

    async def close(self) -> None:
        await self._client.close()

    # -- internal ------------------------------------------------------------

    def _to_chunks(
        self,
        points: list[models.ScoredPoint] | list[models.Record],
        tenant_id: str,
        section_filter: SectionPathFilter | None,
        query_vector: list[float] | None = None,
    ) -> list[EvidenceChunk]:
        cfg = self._config
        chunks: list[EvidenceChunk] = []
        for point in points:
            payload = point.payload or {}
            hit_tenant = payload.get(cfg.tenant_field)
            if hit_tenant != tenant_id:
                logger.warning(
                    "Dropping point %s: tenant %r does not match query tenant %r",
                    point.id, hit_tenant, tenant_id,
                )
                continue

            section_path = _parse_section_path(payload.get(cfg.section_path_field))
            if section_filter is not None and not section_filter.matches(section_path):
                logger.debug(
                    "Dropping point %s: section path %s outside filter",
                    point.id, section_path,
                )
                continue

            if query_vector is not None:
                score = _cosine(query_vector, point.vector)
            else:
                score = float(getattr(point, "score", None) or 0.0)

            point_id = str(point.id)
            metadata = {
                k: v
                for k, v in payload.items()
                if k not in _RESERVED_KEYS and k not in (cfg.tenant_field, cfg.doc_id_field)
            }
            chunks.append(
                EvidenceChunk(
                    chunk_id=str(payload.get("chunkId") or point_id),
                    doc_id=str(payload.get(cfg.doc_id_field) or point_id),
                    section_path=section_path,
                    content=payload.get("content") or "",
                    score=score,
                    tenant_id=tenant_id,
                    metadata=metadata,
                )
            )
        return chunks

    async def _call(self, operation: str, request: Callable[[], Awaitable[T]]) -> T:
        """Run a client request with one retry on transport errors, timeouts and 5xx."""
        max_attempts = max(1, self._config.max_retries + 1)
        for attempt in range(max_attempts):
            last = attempt == max_attempts - 1
            try:
                return await request()
            except UnexpectedResponse as exc:
                status = exc.status_code or 0
                if status >= 500 and not last:
                    await self._backoff(operation, f"status {status}", attempt, max_attempts)
                    continue
                body = (exc.content or b"")[:500].decode("utf-8", errors="replace")
                raise RetrievalError(
                    f"Vector store returned {status}",
                    details={"status_code": status, "body": body},
                ) from exc
            except (ResponseHandlingException, httpx.TransportError) as exc:
                if not last:
                    await self._backoff(operation, exc, attempt, max_attempts)
                    continue
                source = getattr(exc, "source", exc)
                if isinstance(source, httpx.TimeoutException):
                    raise RetrievalError(
                        f"Vector search timed out: {source}",
                        code="RETRIEVAL_TIMEOUT",
                    ) from exc
                raise RetrievalError(f"Vector store unreachable: {source}") from exc

        raise RetrievalError("Vector search failed")  # pragma: no cover

    async def _backoff(self, operation: str, reason: Any, attempt: int, max_attempts: int) -> None:
        delay = 0.5 * (2 ** attempt)
        logger.warning(
            "Vector store %s failed (%s), retrying in %.1fs (%d/%d)",
            operation, reason, delay, attempt + 1, max_attempts,
        )
        await asyncio.sleep(delay)
