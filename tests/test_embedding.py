"""Tests for the embedding service and retry policy."""

import asyncio

import pytest

from handoff.errors import EmbeddingError, TransientProviderError
from handoff.operators import CacheConfig, EmbeddingCache, EmbeddingConfig, EmbeddingService, RetryPolicy

from conftest import DIM, KeywordEmbedder, RecordingSleep, keyword_vector


def make_service(embedder, sleep=None, **config):
    config.setdefault("embedding_dim", DIM)
    return EmbeddingService(
        embedder,
        retry_policy=RetryPolicy(sleep=sleep or RecordingSleep()),
        config=EmbeddingConfig(**config),
    )


class TestRetryPolicy:
    @pytest.mark.asyncio
    async def test_backoff_delays_double(self):
        sleep = RecordingSleep()
        embedder = KeywordEmbedder(transient_failures=2)
        service = make_service(embedder, sleep)

        vector = await service.embed("haircut price")

        assert vector == keyword_vector("haircut price")
        assert sleep.delays == [1.0, 2.0]
        assert len(embedder.calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = RecordingSleep()
        embedder = KeywordEmbedder(transient_failures=10)
        service = make_service(embedder, sleep)

        with pytest.raises(TransientProviderError):
            await service.embed("haircut price")
        assert len(embedder.calls) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_not_retried(self):
        sleep = RecordingSleep()
        embedder = KeywordEmbedder()
        embedder.fail_texts.add("bad text")
        service = make_service(embedder, sleep)

        with pytest.raises(EmbeddingError):
            await service.embed("bad text")
        assert len(embedder.calls) == 1
        assert sleep.delays == []


class TestEmbeddingService:
    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        service = make_service(KeywordEmbedder(delay=0.5), timeout=0.01)
        with pytest.raises(TransientProviderError):
            await service.embed("opening hours")

    @pytest.mark.asyncio
    async def test_wrong_dimension_is_embedding_error(self):
        service = make_service(KeywordEmbedder(dim=4))
        with pytest.raises(EmbeddingError):
            await service.embed("opening hours")

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self):
        embedder = KeywordEmbedder()
        embedder.fail_texts.add("parking info")
        service = make_service(embedder)
        with pytest.raises(EmbeddingError):
            await service.embed("parking info")
        embedder.fail_texts.clear()
        assert await service.embed("parking info") == keyword_vector("parking info")

    @pytest.mark.asyncio
    async def test_embed_many_keeps_order_and_isolates_failures(self):
        embedder = KeywordEmbedder()
        embedder.fail_texts.add("broken")
        service = make_service(embedder)

        results = await service.embed_many(["beard shave", "broken", "opening hours", "beard shave"])

        assert results[0] == keyword_vector("beard shave")
        assert isinstance(results[1], EmbeddingError)
        assert results[2] == keyword_vector("opening hours")
        assert results[3] == results[0]
        assert sorted(embedder.calls) == ["beard shave", "broken", "opening hours"]

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_call(self):
        embedder = KeywordEmbedder(delay=0.05)
        service = make_service(embedder)
        first, second = await asyncio.gather(
            service.embed("card payment"), service.embed("card payment")
        )
        assert first == second
        assert embedder.calls == ["card payment"]

    @pytest.mark.asyncio
    async def test_records_latency(self):
        service = make_service(KeywordEmbedder())
        await service.embed("booking")
        assert service.monitor.stats("embedding.generate").count == 1

    @pytest.mark.asyncio
    async def test_connection_reset_is_retried(self):
        class ResettingEmbedder(KeywordEmbedder):
            def __init__(self, resets):
                super().__init__()
                self.resets = resets

            async def embed(self, text):
                if self.resets:
                    self.resets -= 1
                    self.calls.append(text)
                    raise ConnectionResetError("connection reset by peer")
                return await super().embed(text)

        sleep = RecordingSleep()
        embedder = ResettingEmbedder(resets=2)
        service = make_service(embedder, sleep)

        assert await service.embed("opening hours") == keyword_vector("opening hours")
        assert len(embedder.calls) == 3
        assert sleep.delays == [1.0, 2.0]

    def test_uses_the_given_empty_cache(self):
        cache = EmbeddingCache(CacheConfig(ttl_seconds=5))
        service = EmbeddingService(KeywordEmbedder(), cache=cache)
        assert len(cache) == 0
        assert service.cache is cache
