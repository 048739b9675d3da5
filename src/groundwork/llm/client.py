"""Abstract LLM client interface and factory function.

Every provider speaks the same two operations: a one-shot completion that
returns a SynthesisResult, and a streaming completion that yields
StreamEvents ending in either ``response_completed`` + ``done`` or a
single ``error``. Providers only supply their wire format.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator

import httpx

from groundwork.core.config import LLMConfig
from groundwork.core.errors import SynthesisError
from groundwork.core.types import StreamEvent, SynthesisResult, Usage
from groundwork.llm.streaming import (
    Delta,
    completed_payload,
    degenerate_stream,
    estimate_tokens,
    merge_usage,
    normalize_finish_reason,
    with_inactivity_timeout,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions using only the provided context.\n\n"
    "Rules:\n"
    "- Answer only from the numbered context passages. Do not use prior knowledge.\n"
    "- Cite the passage supporting each claim with its marker, for example [^1] or [^2].\n"
    "- Only use markers that appear in the context.\n"
    "- If the context does not contain the answer, say: \"I don't have enough "
    "information in the provided context to answer this question.\""
)


def build_messages(
    query: str,
    context: str,
    *,
    answer_format: str = "markdown",
) -> list[dict[str, str]]:
    """Assemble the chat messages for a grounded answer."""
    user = f"Context:\n{context}\n\nQuestion: {query}"
    if answer_format == "plain":
        user += "\n\nAnswer in plain text without markdown formatting."
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class LLMClient(abc.ABC):
    """Abstract base class for LLM providers.

    Subclasses describe the provider's HTTP dialect (endpoint, request
    body, response and stream parsing). Retry, timeout and stream
    termination rules live here so every provider behaves the same.
    """

    #: False for providers or deployments that cannot stream. Streaming
    #: calls then fall back to a one-shot completion.
    supports_streaming: bool = True
    health_path: str = "/v1/models"

    def __init__(self, config: LLMConfig, http: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._http = http or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            headers=self._default_headers(),
        )

    @property
    def provider_name(self) -> str:
        return self.config.provider.lower()

    # -- provider dialect ----------------------------------------------------

    def _default_headers(self) -> dict[str, str]:
        return {}

    def _params(self) -> dict[str, str]:
        return {}

    @abc.abstractmethod
    def _chat_path(self) -> str:
        """Endpoint for chat completions, relative to base_url."""

    @abc.abstractmethod
    def _build_payload(self, messages: list[dict[str, str]], *, stream: bool) -> dict[str, Any]:
        """Translate chat messages into the provider's request body."""

    @abc.abstractmethod
    def _parse_completion(self, data: dict[str, Any]) -> Delta:
        """Extract text, usage and finish reason from a non-streaming body."""

    @abc.abstractmethod
    def _parse_stream_line(self, line: str) -> list[Delta]:
        """Parse one non-empty line of the provider's stream."""

    # -- public API ----------------------------------------------------------

    async def generate_completion(
        self,
        query: str,
        context: str,
        *,
        answer_format: str = "markdown",
    ) -> SynthesisResult:
        """Answer *query* from *context* in a single request.

        Raises:
            SynthesisError: on timeout, rate limiting, provider failure or a
                response that cannot be parsed.
        """
        messages = build_messages(query, context, answer_format=answer_format)
        return await self.complete(messages)

    async def generate_streaming_completion(
        self,
        query: str,
        context: str,
        *,
        answer_format: str = "markdown",
    ) -> AsyncIterator[StreamEvent]:
        """Stream an answer as ``chunk`` events.

        Failures are reported in-band as a final ``error`` event; this
        generator does not raise for provider errors. A failure before the
        first chunk may be retried; once text has been emitted it is not.
        """
        started = time.perf_counter()
        messages = build_messages(query, context, answer_format=answer_format)

        if not (self.config.streaming and self.supports_streaming):
            try:
                result = await self.complete(messages)
            except SynthesisError as exc:
                yield StreamEvent.error(exc.code, exc.message)
                return
            async for event in degenerate_stream(result, _elapsed_ms(started)):
                yield event
            return

        max_attempts = max(1, self.config.max_retries + 1)
        for attempt in range(max_attempts):
            parts: list[str] = []
            usage: Usage | None = None
            finish_reason: str | None = None
            model: str | None = None
            completed = False
            try:
                deltas = with_inactivity_timeout(
                    self._stream_deltas(messages),
                    self.config.stream_inactivity_timeout_seconds,
                )
                async with aclosing(deltas):
                    async for delta in deltas:
                        if delta.text:
                            parts.append(delta.text)
                            yield StreamEvent.chunk(delta.text)
                        if delta.usage is not None:
                            usage = merge_usage(usage, delta.usage)
                            yield StreamEvent.metadata({"usage": usage.model_dump()})
                        finish_reason = delta.finish_reason or finish_reason
                        model = delta.model or model
                        if delta.done:
                            completed = True
                            break
                if not completed:
                    raise SynthesisError(
                        "Provider stream ended without a completion signal",
                        code="LLM_BAD_RESPONSE",
                        provider=self.provider_name,
                    )
            except SynthesisError as exc:
                if not parts and exc.retryable and attempt < max_attempts - 1:
                    await self._backoff(self._chat_path(), exc, attempt, max_attempts)
                    continue
                logger.warning(
                    "Stream from %s failed after %d chunks: %s",
                    self.provider_name, len(parts), exc.message,
                )
                yield StreamEvent.error(exc.code, exc.message)
                return

            result = self._build_result(messages, "".join(parts), usage, finish_reason, model)
            yield StreamEvent.response_completed(
                completed_payload(
                    result,
                    total_chunks=len(parts),
                    response_time_ms=_elapsed_ms(started),
                )
            )
            yield StreamEvent.done()
            return

    async def complete(self, messages: list[dict[str, str]]) -> SynthesisResult:
        """Run a non-streaming completion over prepared chat messages."""
        payload = self._build_payload(messages, stream=False)
        data = await self._request_with_retry(self._chat_path(), payload)
        try:
            parsed = self._parse_completion(data)
        except (AttributeError, KeyError, IndexError, TypeError) as exc:
            raise SynthesisError(
                f"Unexpected response shape from {self.provider_name}: {exc}",
                code="LLM_BAD_RESPONSE",
                provider=self.provider_name,
            ) from exc
        return self._build_result(
            messages, parsed.text or "", parsed.usage, parsed.finish_reason, parsed.model
        )

    async def is_available(self) -> bool:
        """Return True if the provider is reachable."""
        try:
            r = await self._http.get(self.health_path, params=self._params())
            return r.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        await self._http.aclose()

    # -- internals -----------------------------------------------------------

    def _build_result(
        self,
        messages: list[dict[str, str]],
        text: str,
        usage: Usage | None,
        finish_reason: str | None,
        model: str | None,
    ) -> SynthesisResult:
        if usage is None or usage.total_tokens == 0:
            prompt = estimate_tokens("".join(m["content"] for m in messages))
            completion = estimate_tokens(text)
            usage = Usage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            )
        return SynthesisResult(
            answer=text,
            tokens_used=usage.total_tokens,
            model=model or self.config.model,
            provider=self.provider_name,
            finish_reason=normalize_finish_reason(finish_reason),
            usage=usage,
        )

    def _status_error(self, resp: httpx.Response) -> SynthesisError:
        body = resp.text[:500]
        details = {"status_code": resp.status_code, "body": body}
        if resp.status_code == 429:
            return SynthesisError(
                f"{self.provider_name} rate limited the request",
                code="LLM_RATE_LIMITED",
                provider=self.provider_name,
                details=details,
            )
        return SynthesisError(
            f"{self.provider_name} returned HTTP {resp.status_code}",
            code="LLM_PROVIDER_ERROR",
            provider=self.provider_name,
            retryable=resp.status_code >= 500,
            details=details,
        )

    def _transport_error(self, exc: httpx.HTTPError) -> SynthesisError:
        if isinstance(exc, httpx.TimeoutException):
            return SynthesisError(
                f"{self.provider_name} request timed out",
                code="LLM_TIMEOUT",
                provider=self.provider_name,
                retryable=True,
            )
        return SynthesisError(
            f"Transport error talking to {self.provider_name}: {exc}",
            code="LLM_PROVIDER_ERROR",
            provider=self.provider_name,
            retryable=True,
        )

    def _load_json(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise SynthesisError(
                f"Malformed JSON from {self.provider_name}: {raw[:200]!r}",
                code="LLM_BAD_RESPONSE",
                provider=self.provider_name,
            ) from exc

    async def _request_with_retry(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload*, retrying timeouts, transport errors and 5xx."""
        max_attempts = max(1, self.config.max_retries + 1)

        for attempt in range(max_attempts):
            try:
                resp = await self._http.post(url, json=payload, params=self._params())
            except httpx.TransportError as exc:
                error = self._transport_error(exc)
            else:
                if resp.status_code < 400:
                    return self._load_json(resp.text)
                error = self._status_error(resp)

            if not error.retryable or attempt == max_attempts - 1:
                raise error
            await self._backoff(url, error, attempt, max_attempts)

        raise AssertionError("unreachable")  # pragma: no cover

    async def _stream_deltas(self, messages: list[dict[str, str]]) -> AsyncIterator[Delta]:
        payload = self._build_payload(messages, stream=True)
        try:
            async with self._http.stream(
                "POST", self._chat_path(), json=payload, params=self._params()
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise self._status_error(resp)
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        deltas = self._parse_stream_line(line)
                    except (AttributeError, KeyError, IndexError, TypeError) as exc:
                        raise SynthesisError(
                            f"Unexpected stream payload from {self.provider_name}: {line[:200]!r}",
                            code="LLM_BAD_RESPONSE",
                            provider=self.provider_name,
                        ) from exc
                    for delta in deltas:
                        yield delta
        except httpx.TransportError as exc:
            raise self._transport_error(exc) from exc

    @staticmethod
    async def _backoff(url: str, error: SynthesisError, attempt: int, max_attempts: int) -> None:
        delay = 0.5 * (2 ** attempt)
        logger.warning(
            "Request to %s failed (%s), retrying in %.1fs (%d/%d)",
            url, error.code, delay, attempt + 1, max_attempts,
        )
        await asyncio.sleep(delay)


def create_llm_client(config: LLMConfig) -> LLMClient:
    """Factory: select and instantiate an LLM provider based on config.provider."""

    from groundwork.llm.providers import PROVIDER_REGISTRY

    provider = config.provider.lower()
    if provider not in PROVIDER_REGISTRY:
        available = ", ".join(sorted(PROVIDER_REGISTRY))
        raise ValueError(
            f"Unknown LLM provider {config.provider!r}. "
            f"Available: {available}"
        )

    cls = PROVIDER_REGISTRY[provider]
    return cls(config)
