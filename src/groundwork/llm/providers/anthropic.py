"""Anthropic Messages API provider."""

from __future__ import annotations

from typing import Any

from groundwork.core.errors import SynthesisError
from groundwork.core.types import Usage
from groundwork.llm.client import LLMClient
from groundwork.llm.streaming import Delta

_DEFAULT_API_VERSION = "2023-06-01"


class AnthropicClient(LLMClient):
    """Talks to the Anthropic ``/v1/messages`` endpoint.

    The system prompt travels in its own field rather than as a message.
    Streams are typed SSE events; text arrives in ``content_block_delta``
    and the stream ends with ``message_stop``.
    """

    def _default_headers(self) -> dict[str, str]:
        headers = {"anthropic-version": self.config.api_version or _DEFAULT_API_VERSION}
        if self.config.api_key:
            headers["x-api-key"] = self.config.api_key
        return headers

    def _chat_path(self) -> str:
        return "/v1/messages"

    def _build_payload(self, messages: list[dict[str, str]], *, stream: bool) -> dict[str, Any]:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        payload: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [m for m in messages if m["role"] != "system"],
            "stream": stream,
        }
        if system:
            payload["system"] = system
        if self.config.top_p is not None:
            payload["top_p"] = self.config.top_p
        return payload

    def _parse_completion(self, data: dict[str, Any]) -> Delta:
        text = "".join(
            block.get("text", "")
            for block in data["content"]
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        prompt = usage.get("input_tokens", 0)
        completion = usage.get("output_tokens", 0)
        return Delta(
            text=text,
            usage=Usage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            ),
            finish_reason=data.get("stop_reason"),
            model=data.get("model"),
            done=True,
        )

    def _parse_stream_line(self, line: str) -> list[Delta]:
        # "event:" lines duplicate the "type" field of the data payload.
        if not line.startswith("data:"):
            return []
        data = self._load_json(line[len("data:"):].strip())
        kind = data.get("type")

        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [Delta(text=delta.get("text", ""))]
            return []
        if kind == "message_start":
            message = data.get("message") or {}
            prompt = (message.get("usage") or {}).get("input_tokens", 0)
            return [Delta(model=message.get("model"), usage=Usage(prompt_tokens=prompt))]
        if kind == "message_delta":
            completion = (data.get("usage") or {}).get("output_tokens", 0)
            return [
                Delta(
                    finish_reason=(data.get("delta") or {}).get("stop_reason"),
                    usage=Usage(completion_tokens=completion),
                )
            ]
        if kind == "message_stop":
            return [Delta(done=True)]
        if kind == "error":
            error = data.get("error") or {}
            code = "LLM_RATE_LIMITED" if error.get("type") == "rate_limit_error" else "LLM_PROVIDER_ERROR"
            raise SynthesisError(
                error.get("message", "Anthropic stream error"),
                code=code,
                provider=self.provider_name,
                retryable=error.get("type") == "overloaded_error",
            )
        return []
