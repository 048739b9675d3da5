"""Query orchestration for Groundwork.

Runs one question through retrieval, aggregation, the answerability
guardrail and, when the evidence allows it, synthesis and citation
binding. Each call gets its own QueryRun; the orchestrator itself holds
only the shared collaborators.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

from pydantic import BaseModel, ConfigDict, Field

from groundwork.core.errors import RetrievalError, SynthesisError
from groundwork.core.types import (
    AuditEvent,
    Citation,
    EvidenceSet,
    GuardrailDecision,
    Query,
    QueryState,
    SectionPathFilter,
    StreamEvent,
    StreamEventType,
    SynthesisResult,
    Usage,
    UserContext,
)
from groundwork.governance.audit import AuditLogger
from groundwork.llm.client import LLMClient
from groundwork.rag.aggregate import EvidenceAggregator
from groundwork.rag.citation import BindResult, CitationBinder, build_context, source_name
from groundwork.rag.guardrail import AnswerabilityGuardrail
from groundwork.rag.retrieve import Retriever

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class SynthesisOptions(BaseModel):
    """Per-request knobs for answer generation."""

    model_config = ConfigDict(populate_by_name=True)

    include_citations: bool = Field(default=True, alias="includeCitations")
    answer_format: Literal["markdown", "plain"] = Field(default="markdown", alias="answerFormat")
    max_context_length: int | None = Field(default=None, ge=1, alias="maxContextLength")


class AskRequest(BaseModel):
    """A question asked on behalf of a user within one tenant."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1)
    user_context: UserContext = Field(alias="userContext")
    k: int | None = Field(default=None, ge=1, le=100)
    doc_id: str | None = Field(default=None, alias="docId")
    section_path: SectionPathFilter | None = Field(default=None, alias="sectionPath")
    expand_sections: bool = Field(default=False, alias="expandSections")
    synthesis: SynthesisOptions = Field(default_factory=SynthesisOptions)
    include_metrics: bool = Field(default=False, alias="includeMetrics")
    include_debug_info: bool = Field(default=False, alias="includeDebugInfo")


class RetrievedDocument(BaseModel):
    chunk_id: str
    doc_id: str
    section_path: tuple[str, ...] = ()
    content: str
    score: float
    source: str


class SynthesisMetadata(BaseModel):
    model_used: str
    tokens_used: int
    llm_provider: str
    finish_reason: str = "stop"


class Metrics(BaseModel):
    """Timings in milliseconds."""

    total_duration: float
    synthesis_time: float = 0.0


class AskResponse(BaseModel):
    """Answer to an AskRequest. Guardrail rejections are responses too."""

    answer: str
    retrieved_documents: list[RetrievedDocument] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    query_id: str
    guardrail_decision: GuardrailDecision
    synthesis_metadata: SynthesisMetadata | None = None
    metrics: Metrics | None = None
    debug_info: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Per-query state
# ---------------------------------------------------------------------------

_TRANSITIONS: dict[QueryState, frozenset[QueryState]] = {
    QueryState.RECEIVED: frozenset({QueryState.RETRIEVING}),
    QueryState.RETRIEVING: frozenset({QueryState.RETRIEVAL_FAILED, QueryState.AGGREGATED}),
    QueryState.AGGREGATED: frozenset({QueryState.GUARDRAIL_EVALUATED}),
    QueryState.GUARDRAIL_EVALUATED: frozenset({QueryState.REJECTED, QueryState.SYNTHESIZING}),
    QueryState.SYNTHESIZING: frozenset({QueryState.SYNTHESIS_FAILED, QueryState.COMPLETED}),
}


@dataclass
class QueryRun:
    """Everything known about one query while it is being answered."""

    query_id: str
    request: AskRequest
    query: Query
    state: QueryState = QueryState.RECEIVED
    history: list[QueryState] = field(default_factory=lambda: [QueryState.RECEIVED])
    started: float = field(default_factory=time.perf_counter)
    evidence: EvidenceSet | None = None
    decision: GuardrailDecision | None = None
    synthesis_ms: float = 0.0
    dropped_citations: int = 0

    def advance(self, state: QueryState) -> None:
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"Illegal query transition {self.state} -> {state}")
        self.state = state
        self.history.append(state)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


def _keep_markers(request: AskRequest) -> bool:
    options = request.synthesis
    return options.include_citations and options.answer_format != "plain"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class QueryOrchestrator:
    """Composes retrieval, guardrail, synthesis and citation binding.

    Args:
        retriever: Tenant-filtered retrieval over the vector store.
        aggregator: Dedupes, ranks and budgets raw hits.
        guardrail: Decides whether the evidence justifies synthesis.
        llm_client: Provider-agnostic synthesis client.
        binder: Resolves citation markers in generated text.
        audit_logger: Receives one entry per terminal query state. Optional.
        default_top_k: Used when the request does not set ``k``.
    """

    def __init__(
        self,
        retriever: Retriever,
        aggregator: EvidenceAggregator,
        guardrail: AnswerabilityGuardrail,
        llm_client: LLMClient,
        binder: CitationBinder | None = None,
        audit_logger: AuditLogger | None = None,
        default_top_k: int = 10,
    ) -> None:
        self.retriever = retriever
        self.aggregator = aggregator
        self.guardrail = guardrail
        self.llm_client = llm_client
        self.binder = binder or CitationBinder()
        self.audit_logger = audit_logger
        self.default_top_k = default_top_k

    async def ask(self, request: AskRequest) -> AskResponse:
        """Answer *request* in one shot.

        Raises:
            RetrievalError: The vector store could not be queried. Distinct
                from "no evidence", which is a rejected response.
            SynthesisError: Evidence was sufficient but the provider failed.
        """
        run = self._start(request)
        evidence, decision = await self._gather_evidence(run)

        if not decision.is_answerable:
            self._finish(run, QueryState.REJECTED)
            return self._response(run, evidence, decision, None)

        run.advance(QueryState.SYNTHESIZING)
        context = build_context(evidence)
        started = time.perf_counter()
        try:
            result = await self.llm_client.generate_completion(
                request.query,
                context,
                answer_format=request.synthesis.answer_format,
            )
        except SynthesisError as exc:
            self._finish(run, QueryState.SYNTHESIS_FAILED, error_code=exc.code)
            raise
        run.synthesis_ms = (time.perf_counter() - started) * 1000

        bound = self.binder.bind(result.answer, evidence, keep_markers=_keep_markers(request))
        result = self._with_citations(run, result, bound)
        self._finish(run, QueryState.COMPLETED)
        return self._response(run, evidence, decision, result)

    async def ask_stream(self, request: AskRequest) -> AsyncIterator[StreamEvent]:
        """Answer *request* as a stream of events.

        On success the order is ``chunk``*, ``citations``, ``metadata``,
        ``response_completed``, ``done``. Chunks carry bound text, so their
        concatenation equals the ``answer`` of the final response. A
        guardrail rejection yields only ``response_completed`` (carrying the
        "I don't know" response) and ``done``. Any failure ends the stream
        with a single ``error``.
        """
        run = self._start(request)
        try:
            evidence, decision = await self._gather_evidence(run)
        except RetrievalError as exc:
            yield StreamEvent.error(exc.code, exc.message)
            return

        if not decision.is_answerable:
            self._finish(run, QueryState.REJECTED)
            response = self._response(run, evidence, decision, None)
            yield StreamEvent.response_completed(response.model_dump(mode="json"))
            yield StreamEvent.done({"query_id": run.query_id})
            return

        run.advance(QueryState.SYNTHESIZING)
        context = build_context(evidence)
        started = time.perf_counter()
        binding = self.binder.stream(evidence, keep_markers=_keep_markers(request))
        parts: list[str] = []
        summary: dict[str, Any] | None = None

        events = self.llm_client.generate_streaming_completion(
            request.query,
            context,
            answer_format=request.synthesis.answer_format,
        )
        try:
            async with aclosing(events):
                async for event in events:
                    if event.type is StreamEventType.CHUNK:
                        text = binding.feed(event.data)
                        if text:
                            parts.append(text)
                            yield StreamEvent.chunk(text)
                    elif event.type is StreamEventType.RESPONSE_COMPLETED:
                        summary = event.data
                    elif event.type is StreamEventType.ERROR:
                        self._finish(run, QueryState.SYNTHESIS_FAILED, error_code=event.data["code"])
                        yield event
                        return
                    elif event.type is StreamEventType.DONE:
                        break
            run.synthesis_ms = (time.perf_counter() - started) * 1000

            if summary is None:
                self._finish(run, QueryState.SYNTHESIS_FAILED, error_code="LLM_BAD_RESPONSE")
                yield StreamEvent.error(
                    "LLM_BAD_RESPONSE", "Stream finished without a completion summary"
                )
                return

            tail = binding.finish()
            if tail:
                parts.append(tail)
                yield StreamEvent.chunk(tail)
        except (GeneratorExit, asyncio.CancelledError):
            if run.state is QueryState.SYNTHESIZING:
                logger.info("Stream for query %s cancelled by consumer", run.query_id)
                self._finish(run, QueryState.SYNTHESIS_FAILED, error_code="CANCELLED")
            raise

        result = SynthesisResult(
            answer="".join(parts),
            tokens_used=summary.get("tokens_used", 0),
            model=summary.get("model") or self.llm_client.config.model,
            provider=summary.get("provider") or self.llm_client.provider_name,
            finish_reason=summary.get("finish_reason", "stop"),
            usage=Usage(**summary.get("usage", {})),
        )
        bound = BindResult(
            text=result.answer, citations=binding.citations, warnings=binding.warnings
        )
        result = self._with_citations(run, result, bound)
        self._finish(run, QueryState.COMPLETED)
        response = self._response(run, evidence, decision, result)

        yield StreamEvent.citations(result.citations)
        yield StreamEvent.metadata(
            {
                "query_id": run.query_id,
                "synthesis_metadata": response.synthesis_metadata.model_dump(),
                "usage": result.usage.model_dump(),
            }
        )
        yield StreamEvent.response_completed(response.model_dump(mode="json"))
        yield StreamEvent.done({"query_id": run.query_id})

    async def close(self) -> None:
        """Release the shared HTTP clients."""
        await self.retriever.close()
        await self.llm_client.close()

    # -- stages --------------------------------------------------------------

    def _start(self, request: AskRequest) -> QueryRun:
        ctx = request.user_context
        query = Query(
            text=request.query,
            tenant_id=ctx.tenant_id,
            group_ids=ctx.group_ids,
            doc_id=request.doc_id,
            section_path=request.section_path,
            top_k=request.k or self.default_top_k,
            language=ctx.language,
        )
        run = QueryRun(query_id=str(uuid.uuid4()), request=request, query=query)
        logger.info(
            "Query %s received for tenant %s (top_k=%d)",
            run.query_id, query.tenant_id, query.top_k,
        )
        return run

    async def _gather_evidence(self, run: QueryRun) -> tuple[EvidenceSet, GuardrailDecision]:
        run.advance(QueryState.RETRIEVING)
        try:
            if run.request.expand_sections:
                raw = await self.retriever.retrieve_with_siblings(run.query)
            else:
                raw = await self.retriever.retrieve(run.query)
        except RetrievalError as exc:
            logger.error("Retrieval failed for query %s: %s", run.query_id, exc.message)
            self._finish(run, QueryState.RETRIEVAL_FAILED, error_code=exc.code)
            raise

        evidence = self.aggregator.aggregate(
            raw,
            run.query.tenant_id,
            max_context_chars=run.request.synthesis.max_context_length,
        )
        run.evidence = evidence
        run.advance(QueryState.AGGREGATED)

        decision = self.guardrail.decide(evidence, run.query)
        run.decision = decision
        run.advance(QueryState.GUARDRAIL_EVALUATED)
        logger.info(
            "Query %s guardrail: %s (confidence=%.3f, evidence=%d)",
            run.query_id, decision.reason_code, decision.confidence, len(evidence),
        )
        return evidence, decision

    def _with_citations(
        self,
        run: QueryRun,
        result: SynthesisResult,
        bound: BindResult,
    ) -> SynthesisResult:
        run.dropped_citations = bound.dropped
        citations = bound.citations if run.request.synthesis.include_citations else []
        return result.model_copy(update={"answer": bound.text, "citations": citations})

    def _finish(
        self,
        run: QueryRun,
        state: QueryState,
        error_code: str | None = None,
    ) -> None:
        run.advance(state)
        logger.info(
            "Query %s finished in state %s after %.1fms",
            run.query_id, state, run.elapsed_ms(),
        )
        if self.audit_logger is None:
            return

        details: dict[str, Any] = {"state_history": [s.value for s in run.history]}
        if run.decision is not None:
            details["reason_code"] = run.decision.reason_code.value
            details["confidence"] = run.decision.confidence
        if run.evidence is not None:
            details["chunk_ids"] = run.evidence.chunk_ids()
        if error_code:
            details["error_code"] = error_code

        self.audit_logger.log(
            AuditEvent(
                query_id=run.query_id,
                tenant_id=run.query.tenant_id,
                actor=run.request.user_context.id,
                action="ask",
                outcome=state.value,
                details=details,
            )
        )

    def _response(
        self,
        run: QueryRun,
        evidence: EvidenceSet,
        decision: GuardrailDecision,
        result: SynthesisResult | None,
    ) -> AskResponse:
        request = run.request

        documents = [
            RetrievedDocument(
                chunk_id=c.chunk_id,
                doc_id=c.doc_id,
                section_path=c.section_path,
                content=c.content,
                score=c.score,
                source=source_name(c),
            )
            for c in evidence.chunks
        ]

        response = AskResponse(
            answer=result.answer if result else decision.message or "",
            retrieved_documents=documents,
            citations=result.citations if result else [],
            query_id=run.query_id,
            guardrail_decision=decision,
        )
        if result is not None:
            response.synthesis_metadata = SynthesisMetadata(
                model_used=result.model,
                tokens_used=result.tokens_used,
                llm_provider=result.provider,
                finish_reason=result.finish_reason,
            )
        if request.include_metrics:
            response.metrics = Metrics(
                total_duration=round(run.elapsed_ms(), 2),
                synthesis_time=round(run.synthesis_ms, 2),
            )
        if request.include_debug_info:
            response.debug_info = {
                "state_history": [s.value for s in run.history],
                "score_stats": decision.score_stats.model_dump(),
                "reasoning": decision.reasoning,
                "evidence": {
                    "count": len(evidence),
                    "truncated": evidence.truncated,
                    "total_chars": evidence.total_chars,
                    "chunk_ids": evidence.chunk_ids(),
                },
                "dropped_citations": run.dropped_citations,
            }
        return response
