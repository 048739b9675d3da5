"""Retrieval-augmented answering for Groundwork.

Provides tenant-filtered retrieval, evidence aggregation, the
answerability guardrail, citation binding and the orchestrator that ties
them to an LLM client.
"""

from groundwork.rag.aggregate import EvidenceAggregator
from groundwork.rag.citation import BindResult, CitationBinder, CitationStream, build_context
from groundwork.rag.fusion import reciprocal_rank_fusion
from groundwork.rag.guardrail import AnswerabilityGuardrail
from groundwork.rag.orchestrator import AskRequest, AskResponse, QueryOrchestrator, QueryRun
from groundwork.rag.pipeline import create_orchestrator
from groundwork.rag.rerank import rerank
from groundwork.rag.retrieve import Retriever

__all__ = [
    "AnswerabilityGuardrail",
    "AskRequest",
    "AskResponse",
    "BindResult",
    "CitationBinder",
    "CitationStream",
    "EvidenceAggregator",
    "QueryOrchestrator",
    "QueryRun",
    "Retriever",
    "build_context",
    "create_orchestrator",
    "reciprocal_rank_fusion",
    "rerank",
]
