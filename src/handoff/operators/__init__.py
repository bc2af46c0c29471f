"""Embedding operators: provider, cache, retry policy and service."""

from handoff.operators.cache import CacheConfig, EmbeddingCache, fingerprint
from handoff.operators.embedding import EmbeddingConfig, EmbeddingService
from handoff.operators.encoder import EmbeddingProvider, EncoderConfig, OllamaEncoder
from handoff.operators.retry import RetryPolicy

__all__ = [
    "CacheConfig",
    "EmbeddingCache",
    "fingerprint",
    "EmbeddingConfig",
    "EmbeddingService",
    "EmbeddingProvider",
    "EncoderConfig",
    "OllamaEncoder",
    "RetryPolicy",
]
