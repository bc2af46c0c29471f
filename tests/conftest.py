"""Shared fixtures: a keyword-bucket embedder, a scripted LLM and an in-memory stack."""

import asyncio
import re

import pytest

from handoff.errors import EmbeddingError, TransientProviderError
from handoff.knowledge import ConflictConfig, KnowledgeConflictResolver
from handoff.learning import LearningPipeline, PipelineConfig
from handoff.models import (
    AuditEvent,
    KnowledgeItem,
    LearningQueueItem,
    LearningStatus,
    ResolutionAction,
)
from handoff.monitoring import PerformanceMonitor
from handoff.operators import EmbeddingCache, EmbeddingConfig, EmbeddingService, RetryPolicy
from handoff.storage import InMemoryStore, KnowledgeChange


DIM = 8

# One dimension per topic; the last dimension is a small constant bias
BUCKETS = [
    {"price", "prices", "pricing", "cost", "costs", "priced"},
    {"hours", "open", "opening", "close", "closed", "closes"},
    {"book", "booking", "bookings", "appointment", "appointments"},
    {"haircut", "haircuts", "trim", "cut"},
    {"beard", "shave", "shaves"},
    {"parking", "location", "address"},
    {"payment", "card", "cash", "pay"},
]

_WORD = re.compile(r"[a-z]+")


def keyword_vector(text: str) -> list[float]:
    vector = [0.0] * DIM
    for word in _WORD.findall(text.lower()):
        for i, bucket in enumerate(BUCKETS):
            if word in bucket:
                vector[i] += 1.0
    vector[DIM - 1] = 0.1
    return vector


class KeywordEmbedder:
    """Deterministic provider; similar topics give similar vectors."""

    def __init__(self, delay: float = 0.0, transient_failures: int = 0, dim: int = DIM):
        self.delay = delay
        self.transient_failures = transient_failures
        self.dim = dim
        self.calls: list[str] = []
        self.fail_texts: set[str] = set()

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientProviderError("provider unavailable")
        if text in self.fail_texts:
            raise EmbeddingError(f"cannot embed {text!r}")
        vector = keyword_vector(text)
        return vector[:self.dim] + [0.0] * max(0, self.dim - DIM)


class ScriptedLLM:
    """Returns queued replies in order; the last one repeats."""

    def __init__(self, *replies: str):
        self.replies = list(replies) or ["{}"]
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def seed_knowledge(
    store,
    content: str,
    embedding: list[float] | None = None,
    shop_id: int = 1,
    category: str = "general",
) -> KnowledgeItem:
    """Put a knowledge item in the store through an applied learning item."""
    item = KnowledgeItem(
        shop_id=shop_id,
        content=content,
        category=category,
        source="seed",
        embedding=embedding if embedding is not None else keyword_vector(content),
    )
    queued = LearningQueueItem(shop_id=shop_id, proposed_content=content, category=category)
    await store.insert_learning_item(
        queued, AuditEvent(queued.id, None, LearningStatus.PENDING)
    )
    await store.transition_learning_item(
        queued.id, LearningStatus.PENDING, LearningStatus.APPROVED,
        AuditEvent(queued.id, LearningStatus.PENDING, LearningStatus.APPROVED),
    )
    await store.apply_learning_item(
        queued.id,
        KnowledgeChange(action=ResolutionAction.INSERT, item=item),
        AuditEvent(queued.id, LearningStatus.APPROVED, LearningStatus.APPLIED),
    )
    return item


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def monitor():
    return PerformanceMonitor()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def embeddings(embedder, monitor, recording_sleep):
    return EmbeddingService(
        embedder,
        cache=EmbeddingCache(monitor=monitor),
        retry_policy=RetryPolicy(sleep=recording_sleep),
        monitor=monitor,
        config=EmbeddingConfig(embedding_dim=DIM, timeout=5.0),
    )


@pytest.fixture
def resolver(store, monitor):
    return KnowledgeConflictResolver(store, ConflictConfig(), monitor)


@pytest.fixture
def pipeline(store, embeddings, resolver, monitor):
    return LearningPipeline(store, embeddings, resolver, PipelineConfig(embedding_dim=DIM), monitor)
