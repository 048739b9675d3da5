"""Wiring for the Groundwork query pipeline."""

from __future__ import annotations

from groundwork.core.config import Settings
from groundwork.governance.audit import AuditLogger
from groundwork.llm.client import LLMClient, create_llm_client
from groundwork.rag.aggregate import EvidenceAggregator
from groundwork.rag.citation import CitationBinder
from groundwork.rag.guardrail import AnswerabilityGuardrail
from groundwork.rag.orchestrator import QueryOrchestrator
from groundwork.rag.retrieve import Retriever
from groundwork.vectordb.embeddings import EmbeddingProvider, create_embedding_provider
from groundwork.vectordb.store import QdrantStore


def create_orchestrator(
    settings: Settings,
    llm_client: LLMClient | None = None,
    embedder: EmbeddingProvider | None = None,
    store: QdrantStore | None = None,
    audit_logger: AuditLogger | None = None,
) -> QueryOrchestrator:
    """Factory function to build a fully-wired QueryOrchestrator from settings.

    Any collaborator passed in is used as-is; the rest are created from the
    corresponding section of *settings*. The audit logger is only created
    when ``settings.audit.enabled`` is set.
    """
    if store is None:
        store = QdrantStore(config=settings.vectordb)
    if embedder is None:
        embedder = create_embedding_provider(settings.embedding)
    if llm_client is None:
        llm_client = create_llm_client(settings.llm)
    if audit_logger is None and settings.audit.enabled:
        audit_logger = AuditLogger(settings.audit)

    retriever = Retriever(
        store,
        embedder,
        timeout_seconds=settings.vectordb.retrieval_timeout_seconds,
        config=settings.retrieval,
    )
    return QueryOrchestrator(
        retriever=retriever,
        aggregator=EvidenceAggregator(settings.aggregator),
        guardrail=AnswerabilityGuardrail(settings.guardrail),
        llm_client=llm_client,
        binder=CitationBinder(),
        audit_logger=audit_logger,
        default_top_k=settings.default_top_k,
    )
