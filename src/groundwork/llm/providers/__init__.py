"""Provider registry for LLM backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from groundwork.llm.client import LLMClient

from groundwork.llm.providers.anthropic import AnthropicClient
from groundwork.llm.providers.ollama import OllamaClient
from groundwork.llm.providers.openai_compat import OpenAICompatClient

PROVIDER_REGISTRY: dict[str, type[LLMClient]] = {
    "anthropic": AnthropicClient,
    "azure-openai": OpenAICompatClient,
    "ollama": OllamaClient,
    "openai": OpenAICompatClient,
    "vllm": OpenAICompatClient,
}

__all__ = ["PROVIDER_REGISTRY", "AnthropicClient", "OllamaClient", "OpenAICompatClient"]
