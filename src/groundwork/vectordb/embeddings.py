"""Query embedding providers for Groundwork.

Provides a pluggable interface for text embedding. Includes:
  - EmbeddingProvider: abstract base class
  - OllamaEmbedding: calls the Ollama /api/embeddings endpoint
  - HashEmbedding: deterministic hash-based vectors for tests and local runs
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod

import httpx

from groundwork.core.config import EmbeddingConfig
from groundwork.core.errors import RetrievalError

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed a single query string into a vector."""

    async def close(self) -> None:
        """Release any held connections."""


async def _backoff(reason: str, attempt: int, max_attempts: int) -> None:
    delay = 0.5 * (2 ** attempt)
    logger.warning(
        "Embedding request failed (%s), retrying in %.1fs (%d/%d)",
        reason, delay, attempt + 1, max_attempts,
    )
    await asyncio.sleep(delay)


class OllamaEmbedding(EmbeddingProvider):
    """Embedding provider that calls the Ollama /api/embeddings endpoint.

    Args:
        config: EmbeddingConfig with base URL, model and timeout.
        http: Optional shared ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        self._http = http or httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=httpx.Timeout(self.config.timeout_seconds),
        )

    async def embed(self, text: str) -> list[float]:
        """Embed *text* via Ollama.

        Timeouts, transport errors and 5xx responses are retried with
        backoff up to ``config.max_retries`` times.

        Raises:
            RetrievalError: If the server stays unreachable, returns an
                error status or a body without an ``embedding`` vector.
        """
        max_attempts = max(1, self.config.max_retries + 1)
        for attempt in range(max_attempts):
            last = attempt == max_attempts - 1
            try:
                response = await self._http.post(
                    "/api/embeddings",
                    json={"model": self.config.model, "prompt": text},
                )
            except httpx.TransportError as exc:
                if not last:
                    await _backoff(type(exc).__name__, attempt, max_attempts)
                    continue
                code = "RETRIEVAL_TIMEOUT" if isinstance(exc, httpx.TimeoutException) else None
                raise RetrievalError(f"Embedding service unreachable: {exc}", code=code) from exc

            if response.status_code >= 500 and not last:
                await _backoff(f"status {response.status_code}", attempt, max_attempts)
                continue
            if response.status_code >= 400:
                raise RetrievalError(
                    f"Embedding service returned {response.status_code}",
                    details={"status_code": response.status_code, "body": response.text[:500]},
                )
            try:
                return [float(x) for x in response.json()["embedding"]]
            except (KeyError, TypeError, ValueError) as exc:
                raise RetrievalError(
                    f"Malformed embedding response: {response.text[:200]!r}"
                ) from exc

        raise AssertionError("unreachable")  # pragma: no cover

    async def close(self) -> None:
        await self._http.aclose()


class HashEmbedding(EmbeddingProvider):
    """Deterministic stub embedding (not for production).

    Produces a fixed-size vector from the SHA-256 digest of the text.
    """

    def __init__(self, dimensions: int = 384) -> None:
        self.dimensions = dimensions

    async def embed(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode()).hexdigest()
        vec = [int(digest[i : i + 2], 16) / 255.0 for i in range(0, len(digest), 2)]
        repeats = self.dimensions // len(vec) + 1
        return (vec * repeats)[: self.dimensions]


def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Select an embedding provider from ``config.provider``."""
    provider = config.provider.lower()
    if provider == "ollama":
        return OllamaEmbedding(config)
    if provider == "hash":
        return HashEmbedding(config.dimensions)
    raise ValueError(
        f"Unknown embedding provider {config.provider!r}. Available: hash, ollama"
    )
