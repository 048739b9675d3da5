"""Core type definitions shared across all Groundwork modules."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SectionMatchMode(StrEnum):
    """How a section path filter is evaluated against a chunk's path."""

    ANY = "any"
    PREFIX = "prefix"


class ReasonCode(StrEnum):
    """Why the guardrail reached its decision."""

    ANSWERABLE = "ANSWERABLE"
    NO_RELEVANT_DOCS = "NO_RELEVANT_DOCS"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    INSUFFICIENT_EVIDENCE = "INSUFFICIENT_EVIDENCE"
    GUARDRAIL_DISABLED = "GUARDRAIL_DISABLED"


class QueryState(StrEnum):
    """Lifecycle of a single query through the orchestrator."""

    RECEIVED = "received"
    RETRIEVING = "retrieving"
    RETRIEVAL_FAILED = "retrieval_failed"
    AGGREGATED = "aggregated"
    GUARDRAIL_EVALUATED = "guardrail_evaluated"
    REJECTED = "rejected"
    SYNTHESIZING = "synthesizing"
    SYNTHESIS_FAILED = "synthesis_failed"
    COMPLETED = "completed"


TERMINAL_STATES = frozenset(
    {
        QueryState.RETRIEVAL_FAILED,
        QueryState.REJECTED,
        QueryState.SYNTHESIS_FAILED,
        QueryState.COMPLETED,
    }
)


class StreamEventType(StrEnum):
    """Event vocabulary shared by every streaming producer."""

    CHUNK = "chunk"
    CITATIONS = "citations"
    METADATA = "metadata"
    RESPONSE_COMPLETED = "response_completed"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({StreamEventType.DONE, StreamEventType.ERROR})


def encode_section_path(segments: tuple[str, ...] | list[str]) -> str:
    """Join path segments into the string form stored alongside the list."""
    return "/".join(segments)


class SectionPathFilter(BaseModel):
    """Restricts retrieval to chunks under particular document sections.

    ``any`` matches when at least one of the chunk's path segments is in
    *values*. ``prefix`` matches when the chunk's encoded path equals a
    value or continues it at a segment boundary, so ``block_9`` selects
    ``block_9/table_2`` but never ``block_90``.
    """

    model_config = ConfigDict(frozen=True)

    mode: SectionMatchMode = SectionMatchMode.ANY
    values: tuple[str, ...]

    @model_validator(mode="before")
    @classmethod
    def _accept_shorthand(cls, data: Any) -> Any:
        # {"any": [...]} / {"prefix": [...]} as sent by API clients.
        if isinstance(data, dict) and "values" not in data:
            for mode in SectionMatchMode:
                if mode.value in data:
                    values = data[mode.value]
                    if isinstance(values, str):
                        values = [values]
                    return {"mode": mode, "values": values}
        return data

    def matches(self, section_path: tuple[str, ...] | list[str]) -> bool:
        if self.mode is SectionMatchMode.ANY:
            wanted = set(self.values)
            return any(segment in wanted for segment in section_path)

        encoded = encode_section_path(section_path)
        for value in self.values:
            prefix = value.strip("/")
            if encoded == prefix or encoded.startswith(prefix + "/"):
                return True
        return False


class UserContext(BaseModel):
    """Identity of the caller on whose behalf a question is asked."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    tenant_id: str = Field(alias="tenantId")
    group_ids: tuple[str, ...] = Field(default=(), alias="groupIds")
    language: str | None = None


class Query(BaseModel):
    """A retrieval query. Immutable once issued."""

    model_config = ConfigDict(frozen=True)

    text: str
    tenant_id: str
    group_ids: tuple[str, ...] = ()
    doc_id: str | None = None
    section_path: SectionPathFilter | None = None
    top_k: int = Field(default=10, ge=1)
    language: str | None = None


class EvidenceChunk(BaseModel):
    """A scored passage returned by the vector store."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    doc_id: str
    section_path: tuple[str, ...] = ()
    content: str
    score: float
    tenant_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class EvidenceSet(BaseModel):
    """Deduplicated, ranked and budgeted evidence for one query."""

    tenant_id: str
    chunks: list[EvidenceChunk] = Field(default_factory=list)
    truncated: bool = False
    total_chars: int = 0

    def __len__(self) -> int:
        return len(self.chunks)

    def scores(self) -> list[float]:
        return [c.score for c in self.chunks]

    def chunk_ids(self) -> list[str]:
        return [c.chunk_id for c in self.chunks]


class ScoreStats(BaseModel):
    """Summary statistics over evidence scores."""

    mean: float = 0.0
    max: float = 0.0
    min: float = 0.0
    count: int = 0


class GuardrailDecision(BaseModel):
    """Outcome of the answerability check."""

    is_answerable: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reason_code: ReasonCode
    reasoning: str = ""
    score_stats: ScoreStats = Field(default_factory=ScoreStats)
    message: str | None = None
    suggestions: list[str] = Field(default_factory=list)


class Citation(BaseModel):
    """Binds an in-text ``[^n]`` marker to a chunk of the evidence set."""

    marker: int
    chunk_id: str
    doc_id: str
    section_path: tuple[str, ...] = ()
    source: str = ""


class Usage(BaseModel):
    """Token accounting for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class SynthesisResult(BaseModel):
    """A finished completion, streaming or not."""

    answer: str
    tokens_used: int = 0
    model: str
    provider: str
    citations: list[Citation] = Field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


class StreamEvent(BaseModel):
    """One element of a synthesis stream."""

    type: StreamEventType
    data: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    @classmethod
    def chunk(cls, text: str) -> StreamEvent:
        return cls(type=StreamEventType.CHUNK, data=text)

    @classmethod
    def citations(cls, citations: list[Citation]) -> StreamEvent:
        return cls(
            type=StreamEventType.CITATIONS,
            data=[c.model_dump(mode="json") for c in citations],
        )

    @classmethod
    def metadata(cls, data: dict[str, Any]) -> StreamEvent:
        return cls(type=StreamEventType.METADATA, data=data)

    @classmethod
    def response_completed(cls, data: dict[str, Any]) -> StreamEvent:
        return cls(type=StreamEventType.RESPONSE_COMPLETED, data=data)

    @classmethod
    def done(cls, data: dict[str, Any] | None = None) -> StreamEvent:
        return cls(type=StreamEventType.DONE, data=data)

    @classmethod
    def error(cls, code: str, message: str) -> StreamEvent:
        return cls(type=StreamEventType.ERROR, data={"code": code, "message": message})

    def to_sse(self) -> str:
        """Render as a Server-Sent Events frame."""
        return f"event: {self.type.value}\ndata: {json.dumps(self.data, default=str)}\n\n"


class AuditEvent(BaseModel):
    """Immutable audit log entry for one query outcome."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    query_id: str
    tenant_id: str
    actor: str
    action: str
    outcome: str
    details: dict[str, Any] = Field(default_factory=dict)
