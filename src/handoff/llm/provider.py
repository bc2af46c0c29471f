"""LLM provider using LiteLLM for unified multi-model access."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import Any

import litellm
from litellm import acompletion


_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def extract_json(text: str) -> Any:
    """Parse JSON from a model reply, tolerating a markdown code fence.

    Raises ValueError when nothing parseable is found.
    """
    match = _CODE_FENCE.search(text)
    payload = match.group(1) if match else text.strip()
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"model reply is not JSON: {e}") from e


@dataclass
class LLMConfig:
    """Configuration for LLM provider."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 1024

    # API configuration (optional, auto-detected from env if not set)
    api_key: str | None = None
    api_base: str | None = None

    num_retries: int = 3
    timeout: float = 60.0


@dataclass
class LLMResponse:
    """Response from LLM."""
    content: str | None = None
    finish_reason: str = "stop"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMProvider:
    """Unified LLM provider using LiteLLM.

    The provider is detected from the model name and its credentials are
    read from ``<PREFIX>_API_KEY`` / ``<PREFIX>_BASE_URL``:
    - OpenAI: gpt-4o, gpt-4o-mini (OPENAI_*)
    - Anthropic: claude-* (ANTHROPIC_*)
    - DashScope/Qwen: qwen-* (DASHSCOPE_*)
    - DeepSeek: deepseek-* (DEEPSEEK_*)
    - Ollama: ollama/llama3 (OLLAMA_*)
    """

    PROVIDER_CONFIG = {
        "openai": {"prefixes": ["gpt-", "o1-", "o3-"], "env_prefix": "OPENAI"},
        "anthropic": {"prefixes": ["claude-"], "env_prefix": "ANTHROPIC"},
        "dashscope": {
            "prefixes": ["qwen-", "qwen/", "qwen2", "qwen3"],
            "env_prefix": "DASHSCOPE",
            # OpenAI-compatible endpoint
            "litellm_prefix": "openai/",
        },
        "deepseek": {"prefixes": ["deepseek-", "deepseek/"], "env_prefix": "DEEPSEEK"},
        "ollama": {"prefixes": ["ollama/"], "env_prefix": "OLLAMA"},
    }

    def __init__(self, config: LLMConfig | None = None):
        self.config = config or LLMConfig()
        litellm.drop_params = True
        self.provider = self._detect_provider()
        self._load_provider_config()

    def _detect_provider(self) -> str:
        model = self.config.model.lower()
        for provider, cfg in self.PROVIDER_CONFIG.items():
            if any(model.startswith(p) for p in cfg["prefixes"]):
                return provider
        return "openai"

    def _load_provider_config(self) -> None:
        env_prefix = self.PROVIDER_CONFIG[self.provider]["env_prefix"]
        if not self.config.api_key:
            self.config.api_key = os.getenv(f"{env_prefix}_API_KEY")
        if not self.config.api_base:
            self.config.api_base = (
                os.getenv(f"{env_prefix}_BASE_URL") or os.getenv(f"{env_prefix}_API_BASE")
            )

    def _get_model_name(self) -> str:
        model = self.config.model
        prefix = self.PROVIDER_CONFIG[self.provider].get("litellm_prefix", "")
        if prefix and not model.startswith(prefix):
            return f"{prefix}{model}"
        return model

    def _build_params(self, messages: list[dict]) -> dict:
        params = {
            "model": self._get_model_name(),
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "timeout": self.config.timeout,
            "num_retries": self.config.num_retries,
        }
        if self.config.api_base:
            params["api_base"] = self.config.api_base
        if self.config.api_key:
            params["api_key"] = self.config.api_key
        return params

    async def complete(self, messages: list[dict]) -> LLMResponse:
        """Get a completion from the model."""
        response = await acompletion(**self._build_params(messages))
        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason or "stop",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
        )

    async def generate(self, prompt: str) -> str:
        """Single-turn prompt in, text out."""
        response = await self.complete([{"role": "user", "content": prompt}])
        return response.content or ""

    def get_provider_info(self) -> dict:
        return {
            "provider": self.provider,
            "model": self.config.model,
            "api_base": self.config.api_base or "(default)",
            "api_key_set": bool(self.config.api_key),
        }
