"""Ollama LLM provider using the Ollama REST API."""

from __future__ import annotations

from typing import Any

from groundwork.core.types import Usage
from groundwork.llm.client import LLMClient
from groundwork.llm.streaming import Delta


def _usage(data: dict[str, Any]) -> Usage | None:
    if "prompt_eval_count" not in data and "eval_count" not in data:
        return None
    prompt = data.get("prompt_eval_count", 0)
    completion = data.get("eval_count", 0)
    return Usage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
    )


class OllamaClient(LLMClient):
    """Talks to a local Ollama instance.

    Streams are newline-delimited JSON objects; the last one has
    ``"done": true`` and carries the token counts.
    """

    health_path = "/api/tags"

    def _chat_path(self) -> str:
        return "/api/chat"

    def _build_payload(self, messages: list[dict[str, str]], *, stream: bool) -> dict[str, Any]:
        options: dict[str, Any] = {
            "temperature": self.config.temperature,
            "num_ctx": 4096,
            "num_predict": self.config.max_tokens,
        }
        if self.config.top_p is not None:
            options["top_p"] = self.config.top_p
        return {
            "model": self.config.model,
            "messages": messages,
            "stream": stream,
            "options": options,
        }

    def _parse_completion(self, data: dict[str, Any]) -> Delta:
        return Delta(
            text=data["message"]["content"],
            usage=_usage(data),
            finish_reason=data.get("done_reason"),
            model=data.get("model"),
            done=True,
        )

    def _parse_stream_line(self, line: str) -> list[Delta]:
        data = self._load_json(line)
        done = bool(data.get("done"))
        return [
            Delta(
                text=(data.get("message") or {}).get("content"),
                usage=_usage(data) if done else None,
                finish_reason=data.get("done_reason"),
                model=data.get("model"),
                done=done,
            )
        ]
