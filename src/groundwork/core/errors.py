"""Exception hierarchy for Groundwork.

Every error carries a stable ``code`` that the HTTP layer and the
streaming ``error`` event expose unchanged, so callers can tell a
retrieval outage from a provider outage.
"""

from __future__ import annotations

from typing import Any


class GroundworkError(Exception):
    """Base class for errors surfaced to API callers."""

    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class RetrievalError(GroundworkError):
    """The vector store could not be queried (transport, timeout, 4xx/5xx)."""

    default_code = "RETRIEVAL_FAILED"


class SynthesisError(GroundworkError):
    """The LLM provider failed: timeout, rate limit or malformed response.

    ``retryable`` is set for failures that are safe to repeat (timeouts,
    transport errors, 5xx). Rate limits and 4xx are not retried.
    """

    default_code = "LLM_PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        provider: str | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.provider = provider
        self.retryable = retryable


class CitationResolutionWarning(UserWarning):
    """A citation marker in model output did not resolve to any evidence."""
