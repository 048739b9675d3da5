"""Provider-neutral helpers for streaming completions."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import AsyncIterator, TypeVar

from groundwork.core.errors import SynthesisError
from groundwork.core.types import StreamEvent, SynthesisResult, Usage

T = TypeVar("T")


@dataclass
class Delta:
    """One parsed unit of provider stream output.

    ``done`` marks the provider's own completion signal. A stream that
    ends without one is treated as cut off.
    """

    text: str | None = None
    usage: Usage | None = None
    finish_reason: str | None = None
    model: str | None = None
    done: bool = False


def estimate_tokens(text: str) -> int:
    """Rough token count at ~4 characters per token."""
    return math.ceil(len(text) / 4)


def normalize_finish_reason(reason: str | None) -> str:
    """Map provider stop reasons onto stop/length/content_filter/tool_call."""
    if not reason:
        return "stop"
    normalized = reason.lower()
    if "length" in normalized or "max" in normalized:
        return "length"
    if "content" in normalized or "filter" in normalized:
        return "content_filter"
    if "function" in normalized or "tool" in normalized:
        return "tool_call"
    return "stop"


def merge_usage(current: Usage | None, update: Usage | None) -> Usage | None:
    """Fold a partial usage report into the running total.

    Providers report prompt and completion counts in separate messages, so
    each field keeps the largest value seen.
    """
    if update is None:
        return current
    if current is None:
        current = Usage()
    prompt = max(current.prompt_tokens, update.prompt_tokens)
    completion = max(current.completion_tokens, update.completion_tokens)
    total = max(current.total_tokens, update.total_tokens, prompt + completion)
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


async def with_inactivity_timeout(
    source: AsyncIterator[T],
    timeout: float | None,
) -> AsyncIterator[T]:
    """Re-yield *source*, failing if any single item takes longer than *timeout*.

    The source is always closed on exit, including when the consumer stops
    early, so the underlying HTTP response is released.

    Raises:
        SynthesisError: ``LLM_TIMEOUT`` when the gap between items exceeds
            *timeout* seconds.
    """
    iterator = source.__aiter__()
    try:
        while True:
            try:
                item = await asyncio.wait_for(iterator.__anext__(), timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as exc:
                raise SynthesisError(
                    f"No output from provider for {timeout}s",
                    code="LLM_TIMEOUT",
                    retryable=True,
                ) from exc
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def completed_payload(
    result: SynthesisResult,
    *,
    total_chunks: int,
    response_time_ms: float,
) -> dict:
    """Summary carried by a ``response_completed`` event."""
    return {
        "answer": result.answer,
        "model": result.model,
        "provider": result.provider,
        "tokens_used": result.tokens_used,
        "usage": result.usage.model_dump(),
        "finish_reason": result.finish_reason,
        "total_chunks": total_chunks,
        "response_time_ms": round(response_time_ms, 2),
    }


async def degenerate_stream(
    result: SynthesisResult,
    response_time_ms: float = 0.0,
) -> AsyncIterator[StreamEvent]:
    """Present a finished result with the streaming event protocol."""
    yield StreamEvent.chunk(result.answer)
    yield StreamEvent.response_completed(
        completed_payload(result, total_chunks=1, response_time_ms=response_time_ms)
    )
    yield StreamEvent.done()
