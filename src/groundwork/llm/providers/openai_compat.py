"""OpenAI-compatible LLM provider (works with OpenAI, Azure OpenAI and vLLM)."""

from __future__ import annotations

from typing import Any

from groundwork.core.types import Usage
from groundwork.llm.client import LLMClient
from groundwork.llm.streaming import Delta

_AZURE_DEFAULT_API_VERSION = "2024-06-01"


def _usage(raw: dict[str, Any] | None) -> Usage | None:
    if not raw:
        return None
    return Usage(
        prompt_tokens=raw.get("prompt_tokens", 0),
        completion_tokens=raw.get("completion_tokens", 0),
        total_tokens=raw.get("total_tokens", 0),
    )


class OpenAICompatClient(LLMClient):
    """Talks to any server that exposes the OpenAI chat completions API.

    Streams are Server-Sent Events of ``data: {json}`` lines terminated by
    ``data: [DONE]``. For ``azure-openai`` the model name is the deployment
    and authentication uses the ``api-key`` header.
    """

    @property
    def _is_azure(self) -> bool:
        return self.provider_name == "azure-openai"

    def _default_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.config.api_key:
            if self._is_azure:
                headers["api-key"] = self.config.api_key
            else:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _params(self) -> dict[str, str]:
        if self._is_azure:
            return {"api-version": self.config.api_version or _AZURE_DEFAULT_API_VERSION}
        return {}

    def _chat_path(self) -> str:
        if self._is_azure:
            return f"/openai/deployments/{self.config.model}/chat/completions"
        return "/v1/chat/completions"

    def _build_payload(self, messages: list[dict[str, str]], *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "stream": stream,
            "max_tokens": self.config.max_tokens,
        }
        if self.config.top_p is not None:
            payload["top_p"] = self.config.top_p
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _parse_completion(self, data: dict[str, Any]) -> Delta:
        choice = data["choices"][0]
        return Delta(
            text=choice["message"].get("content") or "",
            usage=_usage(data.get("usage")),
            finish_reason=choice.get("finish_reason"),
            model=data.get("model"),
            done=True,
        )

    def _parse_stream_line(self, line: str) -> list[Delta]:
        if not line.startswith("data:"):
            return []
        raw = line[len("data:"):].strip()
        if raw == "[DONE]":
            return [Delta(done=True)]

        data = self._load_json(raw)
        delta = Delta(usage=_usage(data.get("usage")), model=data.get("model"))
        choices = data.get("choices") or []
        if choices:
            choice = choices[0]
            delta.text = (choice.get("delta") or {}).get("content")
            delta.finish_reason = choice.get("finish_reason")
        return [delta]
