"""Tests for the embedding cache."""

import pytest

from handoff.monitoring import PerformanceMonitor
from handoff.operators import CacheConfig, EmbeddingCache, EmbeddingConfig, EmbeddingService, fingerprint

from conftest import DIM, KeywordEmbedder


class ManualClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFingerprint:
    def test_case_and_whitespace_insensitive(self):
        assert fingerprint("Haircut  price\n") == fingerprint("haircut price")

    def test_different_text_differs(self):
        assert fingerprint("haircut price") != fingerprint("beard price")


class TestEmbeddingCache:
    def test_miss_then_hit(self):
        cache = EmbeddingCache()
        assert cache.get("opening hours") is None
        cache.put("opening hours", [1.0, 2.0])
        assert cache.get("opening hours") == [1.0, 2.0]
        assert cache.stats() == {"size": 1, "hit_rate": 50.0, "total_hits": 1, "total_misses": 1}

    def test_returned_vector_is_a_copy(self):
        cache = EmbeddingCache()
        cache.put("hours", [1.0])
        cache.get("hours").append(9.0)
        assert cache.get("hours") == [1.0]

    def test_entry_expires_after_ttl(self):
        clock = ManualClock()
        cache = EmbeddingCache(CacheConfig(ttl_seconds=10), clock=clock)
        cache.put("hours", [1.0])
        clock.now += 9.9
        assert "hours" in cache
        clock.now += 0.1
        assert "hours" not in cache
        assert cache.get("hours") is None
        assert len(cache) == 0

    def test_cleanup_expired(self):
        clock = ManualClock()
        cache = EmbeddingCache(CacheConfig(ttl_seconds=10), clock=clock)
        cache.put("a", [1.0])
        cache.put("b", [2.0], ttl=100)
        clock.now += 50
        assert cache.cleanup_expired() == 1
        assert "b" in cache

    def test_evicts_least_recently_used(self):
        cache = EmbeddingCache(CacheConfig(max_entries=2))
        cache.put("a", [1.0])
        cache.put("b", [2.0])
        cache.get("a")
        cache.put("c", [3.0])
        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_flush_counters_to_monitor(self):
        monitor = PerformanceMonitor()
        cache = EmbeddingCache(monitor=monitor)
        cache.get("x")
        cache.put("x", [1.0])
        cache.get("x")
        cache.get("x")
        cache.flush_counters()
        assert monitor.counters() == {"embedding_cache.hits": 2, "embedding_cache.misses": 1}
        cache.flush_counters()
        assert monitor.counters()["embedding_cache.hits"] == 2

    def test_clear_resets_stats(self):
        cache = EmbeddingCache()
        cache.put("x", [1.0])
        cache.get("x")
        cache.clear()
        assert cache.stats() == {"size": 0, "hit_rate": 0.0, "total_hits": 0, "total_misses": 0}


class TestCacheWithService:
    @pytest.mark.asyncio
    async def test_provider_called_once_for_repeated_text(self):
        embedder = KeywordEmbedder()
        service = EmbeddingService(embedder, config=EmbeddingConfig(embedding_dim=DIM))
        first = await service.embed("What are your opening hours?")
        second = await service.embed("what are your   opening hours?")
        assert first == second
        assert len(embedder.calls) == 1
        assert service.cache.stats()["total_hits"] == 1
