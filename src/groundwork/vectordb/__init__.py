"""Vector database module for Groundwork.

Provides tenant-scoped, section-aware similarity search against Qdrant.
"""

from groundwork.vectordb.embeddings import (
    EmbeddingProvider,
    HashEmbedding,
    OllamaEmbedding,
    create_embedding_provider,
)
from groundwork.vectordb.filters import build_filter, keyword_filter
from groundwork.vectordb.store import QdrantStore

__all__ = [
    "EmbeddingProvider",
    "HashEmbedding",
    "OllamaEmbedding",
    "QdrantStore",
    "build_filter",
    "create_embedding_provider",
    "keyword_filter",
]
