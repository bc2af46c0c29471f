"""LLM provider interfaces using LiteLLM."""

from handoff.llm.provider import LLMConfig, LLMProvider, LLMResponse, extract_json

__all__ = ["LLMProvider", "LLMConfig", "LLMResponse", "extract_json"]
