"""Application configuration loaded from environment and config files."""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class LLMConfig(BaseSettings):
    """LLM provider configuration."""

    model_config = {"env_prefix": "GROUNDWORK_LLM_"}

    provider: str = "openai"
    base_url: str = "https://api.openai.com"
    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    max_tokens: int = 1000
    top_p: float | None = None
    timeout_seconds: float = 25.0
    stream_inactivity_timeout_seconds: float = 15.0
    max_retries: int = 1
    streaming: bool = True
    api_key: str | None = None
    api_version: str | None = None


class VectorDBConfig(BaseSettings):
    """Qdrant connection and payload field layout."""

    model_config = {"env_prefix": "GROUNDWORK_VECTORDB_"}

    url: str = "http://localhost:6333"
    collection: str = "docs_v1"
    api_key: str | None = None
    timeout_seconds: float = 5.0
    max_retries: int = 1
    # Bound on embed + search for one query; exceeding it fails the query.
    retrieval_timeout_seconds: float = 15.0

    # Payload keys on the external store. The two section path fields back
    # the exact-set and the text/prefix lookup respectively.
    tenant_field: str = "tenant"
    doc_id_field: str = "docId"
    acl_field: str = "acl"
    lang_field: str = "lang"
    section_path_field: str = "sectionPath"
    section_path_text_field: str = "sectionPathText"
    # Full-text indexed chunk body used by keyword retrieval.
    keyword_field: str = "content"


class EmbeddingConfig(BaseSettings):
    """Query embedding provider configuration."""

    model_config = {"env_prefix": "GROUNDWORK_EMBEDDING_"}

    provider: str = "ollama"
    base_url: str = "http://localhost:11434"
    model: str = "bge-small-en-v1.5"
    dimensions: int = 384
    timeout_seconds: float = 5.0
    max_retries: int = 1


class RetrievalConfig(BaseSettings):
    """Hybrid retrieval and reranking."""

    model_config = {"env_prefix": "GROUNDWORK_RETRIEVAL_"}

    # Add a keyword pass and fuse it with the vector hits by reciprocal rank.
    hybrid: bool = True
    keyword_limit: int = Field(default=50, ge=1)
    rrf_k: int = Field(default=60, ge=1)
    vector_weight: float = Field(default=0.7, ge=0.0)
    keyword_weight: float = Field(default=0.3, ge=0.0)
    # Reranking replaces similarity scores with a blended score, so the
    # guardrail thresholds must be tuned for it before it is enabled.
    rerank: bool = False


class AggregatorConfig(BaseSettings):
    """Context budget applied to retrieved evidence."""

    model_config = {"env_prefix": "GROUNDWORK_AGGREGATOR_"}

    max_context_chars: int = Field(default=8000, ge=1)
    max_chunks: int = Field(default=20, ge=1)


class GuardrailThresholds(BaseModel):
    """Answerability thresholds for one tenant."""

    enabled: bool = True
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    min_top_score: float = 0.5
    min_mean_score: float = 0.3
    min_result_count: int = Field(default=1, ge=1)


class GuardrailConfig(BaseSettings):
    """Answerability guardrail policy, with optional per-tenant overrides."""

    model_config = {"env_prefix": "GROUNDWORK_GUARDRAIL_"}

    enabled: bool = True
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    min_top_score: float = 0.5
    min_mean_score: float = 0.3
    min_result_count: int = Field(default=1, ge=1)
    tenant_overrides: dict[str, GuardrailThresholds] = Field(default_factory=dict)
    # YAML file with a top-level "tenants" mapping of per-tenant thresholds.
    # Entries in tenant_overrides take precedence over the file.
    tenant_overrides_file: str | None = None

    def defaults(self) -> GuardrailThresholds:
        """Thresholds for tenants without an override."""
        return GuardrailThresholds(
            enabled=self.enabled,
            min_confidence=self.min_confidence,
            min_top_score=self.min_top_score,
            min_mean_score=self.min_mean_score,
            min_result_count=self.min_result_count,
        )

    def for_tenant(self, tenant_id: str) -> GuardrailThresholds:
        """Return the thresholds that apply to *tenant_id*."""
        return self.tenant_overrides.get(tenant_id) or self.defaults()


class AuditConfig(BaseSettings):
    """Audit logging configuration."""

    model_config = {"env_prefix": "GROUNDWORK_AUDIT_"}

    enabled: bool = True
    log_dir: str = "data/audit"
    hash_algorithm: str = "sha256"


class Settings(BaseSettings):
    """Root application settings."""

    model_config = {"env_prefix": "GROUNDWORK_"}

    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    default_top_k: int = 10

    llm: LLMConfig = Field(default_factory=LLMConfig)
    vectordb: VectorDBConfig = Field(default_factory=VectorDBConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    guardrail: GuardrailConfig = Field(default_factory=GuardrailConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
