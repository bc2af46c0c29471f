"""Encoder - generates text embeddings through Ollama.

Provider failures are classified so the retry policy can tell a
flaky connection from a request that will never succeed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx
import ollama

from handoff.errors import EmbeddingError, TransientProviderError


logger = logging.getLogger(__name__)

# HTTP statuses worth retrying
_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class EmbeddingProvider(Protocol):
    """Anything that can turn text into a fixed-width vector."""

    async def embed(self, text: str) -> list[float]: ...


@dataclass
class EncoderConfig:
    """Configuration for the Ollama encoder."""
    embedding_model: str = "nomic-embed-text"
    embedding_dim: int = 768
    ollama_host: str | None = None  # None = default localhost:11434
    ollama_timeout: float = 60.0
    max_content_length: int = 8000


class OllamaEncoder:
    """Embedding provider backed by ``ollama.AsyncClient.embed``."""

    def __init__(self, config: EncoderConfig | None = None):
        self.config = config or EncoderConfig()
        self._client: ollama.AsyncClient | None = None

    def _get_client(self) -> ollama.AsyncClient:
        if self._client is None:
            self._client = ollama.AsyncClient(
                host=self.config.ollama_host,
                timeout=self.config.ollama_timeout,
            )
        return self._client

    async def embed(self, text: str) -> list[float]:
        """Embed one text. Raises TransientProviderError or EmbeddingError."""
        truncated = text[:self.config.max_content_length]
        try:
            response = await self._get_client().embed(
                model=self.config.embedding_model,
                input=truncated,
            )
        except ollama.ResponseError as e:
            if e.status_code in _TRANSIENT_STATUS:
                raise TransientProviderError(f"ollama returned {e.status_code}: {e.error}") from e
            raise EmbeddingError(f"ollama rejected request ({e.status_code}): {e.error}") from e
        except (httpx.TransportError, ConnectionError, TimeoutError) as e:
            raise TransientProviderError(f"ollama unreachable: {e}") from e

        embeddings = response["embeddings"] if response else None
        if not embeddings:
            raise EmbeddingError("ollama returned no embeddings")

        vector = list(embeddings[0])
        if len(vector) != self.config.embedding_dim:
            raise EmbeddingError(
                f"{self.config.embedding_model} returned {len(vector)} dimensions, "
                f"expected {self.config.embedding_dim}"
            )
        return vector

    async def close(self) -> None:
        self._client = None
