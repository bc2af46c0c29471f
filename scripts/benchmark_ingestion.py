#!/usr/bin/env python3
"""Benchmark the conversation fast path against a slow embedding provider.

Queues N conversations through the storage optimizer backed by the
in-memory store and an embedder with artificial latency, then prints
queue latency and batch timings.

Usage:
    python scripts/benchmark_ingestion.py [count] [embed_delay_ms]
"""

import asyncio
import random
import sys
import time

from rich.console import Console

from handoff.conversation import ConversationStorageOptimizer, OptimizerConfig
from handoff.models import ConversationInput
from handoff.monitoring import PerformanceMonitor
from handoff.operators import EmbeddingCache, EmbeddingConfig, EmbeddingService
from handoff.storage import InMemoryStore


console = Console()

DIM = 64

QUESTIONS = [
    "How much is a haircut?",
    "Are you open on Sundays?",
    "Can I book an appointment for tomorrow?",
    "Do you do beard trims?",
    "Where can I park?",
    "Do you take card payments?",
]


class SlowEmbedder:
    """Pseudo-random vectors after a fixed delay."""

    def __init__(self, delay: float):
        self.delay = delay

    async def embed(self, text: str) -> list[float]:
        await asyncio.sleep(self.delay)
        rng = random.Random(text)
        return [rng.uniform(-1, 1) for _ in range(DIM)]


async def run(count: int, delay: float) -> None:
    monitor = PerformanceMonitor()
    store = InMemoryStore()
    embeddings = EmbeddingService(
        SlowEmbedder(delay),
        cache=EmbeddingCache(monitor=monitor),
        monitor=monitor,
        config=EmbeddingConfig(embedding_dim=DIM),
    )
    optimizer = ConversationStorageOptimizer(
        store, embeddings, OptimizerConfig(batch_size=10, flush_interval=1.0), monitor
    )

    await optimizer.start()
    start = time.perf_counter()
    for i in range(count):
        optimizer.queue(ConversationInput(
            user_id=f"user-{i % 50}",
            channel="web",
            transcript=f"{random.choice(QUESTIONS)} (#{i})",
            shop_id=1 + i % 3,
        ))
    queued_in = time.perf_counter() - start
    await optimizer.stop()
    total = time.perf_counter() - start

    console.print(f"\nQueued {count} conversations in {queued_in * 1000:.1f} ms; "
                  f"all persisted after {total:.2f} s")
    console.print(f"Stored: {len(await store.list_conversations(limit=count))}")
    console.print(monitor.summary_table())
    console.print(optimizer.stats())


def main():
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 200
    delay_ms = float(sys.argv[2]) if len(sys.argv) > 2 else 50.0
    asyncio.run(run(count, delay_ms / 1000))


if __name__ == "__main__":
    main()
