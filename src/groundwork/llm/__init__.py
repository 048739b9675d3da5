"""LLM provider abstraction layer."""

from groundwork.llm.client import LLMClient, build_messages, create_llm_client

__all__ = ["LLMClient", "build_messages", "create_llm_client"]
