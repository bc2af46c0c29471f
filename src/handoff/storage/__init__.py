"""Storage backends."""

from handoff.storage.base import HandoffStore, KnowledgeChange
from handoff.storage.memory import InMemoryStore, cosine_similarity

__all__ = [
    "HandoffStore",
    "KnowledgeChange",
    "InMemoryStore",
    "cosine_similarity",
]
