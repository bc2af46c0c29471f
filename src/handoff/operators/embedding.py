"""Embedding service - cache-aware, bounded, retrying embedding calls.

All components embed through here so that the cache, the concurrency
ceiling and the retry policy apply uniformly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from handoff.errors import EmbeddingError, HandoffError, TransientProviderError
from handoff.monitoring import PerformanceMonitor
from handoff.operators.cache import EmbeddingCache, fingerprint
from handoff.operators.encoder import EmbeddingProvider
from handoff.operators.retry import RetryPolicy


logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for the EmbeddingService."""
    embedding_dim: int = 768
    timeout: float = 30.0             # per provider call, independent of flush timing
    max_concurrency: int = 3          # simultaneous in-flight provider calls


class EmbeddingService:
    """Embeds text with caching, a concurrency ceiling and retries."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache | None = None,
        retry_policy: RetryPolicy | None = None,
        monitor: PerformanceMonitor | None = None,
        config: EmbeddingConfig | None = None,
    ):
        self.config = config or EmbeddingConfig()
        self.provider = provider
        self.monitor = monitor if monitor is not None else PerformanceMonitor()
        # EmbeddingCache is sized, so an empty one is falsy
        self.cache = cache if cache is not None else EmbeddingCache(monitor=self.monitor)
        self.retry_policy = retry_policy or RetryPolicy()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._inflight: dict[str, asyncio.Future] = {}

    async def embed(self, text: str) -> list[float]:
        """Embed ``text``, consulting the cache first.

        Raises TransientProviderError once retries are exhausted, or
        EmbeddingError for failures that retrying cannot fix.
        """
        cached = self.cache.get(text)
        if cached is not None:
            return cached
        return await self._embed_shared(text)

    async def embed_many(self, texts: list[str]) -> list[list[float] | Exception]:
        """Embed several texts concurrently.

        Results are in input order; a failed text yields its exception
        instead of a vector. Identical texts are embedded once.
        """
        results: list[list[float] | Exception | None] = [None] * len(texts)
        misses: dict[str, list[int]] = {}
        first_text: dict[str, str] = {}

        for i, text in enumerate(texts):
            key = fingerprint(text)
            if key in misses:
                misses[key].append(i)
                continue
            cached = self.cache.get(text)
            if cached is not None:
                results[i] = cached
                # later duplicates resolve from the cache too
                continue
            misses[key] = [i]
            first_text[key] = text

        if misses:
            keys = list(misses)
            outcomes = await asyncio.gather(
                *(self._embed_shared(first_text[k]) for k in keys),
                return_exceptions=True,
            )
            for key, outcome in zip(keys, outcomes):
                if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                    raise outcome
                for i in misses[key]:
                    results[i] = outcome

        return results  # type: ignore[return-value]

    async def _embed_shared(self, text: str) -> list[float]:
        """Join an in-flight request for the same text, or start one."""
        key = fingerprint(text)
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._embed_uncached(text))
            self._inflight[key] = future
            future.add_done_callback(lambda _f, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(future)

    async def _embed_uncached(self, text: str) -> list[float]:
        start = time.perf_counter()
        success = False
        try:
            async with self._semaphore:
                vector = await self.retry_policy.call(self._embed_once, text)
            success = True
        finally:
            self.monitor.record("embedding.generate", (time.perf_counter() - start) * 1000, success)
        self.cache.put(text, vector)
        return vector

    async def _embed_once(self, text: str) -> list[float]:
        try:
            vector = await asyncio.wait_for(self.provider.embed(text), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"embedding timed out after {self.config.timeout}s"
            ) from e
        except HandoffError:
            raise
        except (ConnectionError, TimeoutError, OSError) as e:
            raise TransientProviderError(f"embedding provider unreachable: {e}") from e
        except Exception as e:
            raise EmbeddingError(f"embedding provider failed: {e}") from e

        if len(vector) != self.config.embedding_dim:
            raise EmbeddingError(
                f"embedding has {len(vector)} dimensions, expected {self.config.embedding_dim}"
            )
        return list(vector)
