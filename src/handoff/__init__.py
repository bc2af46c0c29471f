"""Handoff - conversation ingestion and knowledge curation for shop assistants.

Conversations are queued on a fast path and persisted in embedded batches;
learnings go through a review workflow before they reach the knowledge base.
"""

from handoff.config import HandoffConfig
from handoff.errors import (
    ConflictError,
    EmbeddingError,
    HandoffError,
    NotFoundError,
    PersistenceError,
    TransientProviderError,
    ValidationError,
)
from handoff.models import (
    Channel,
    ConversationInput,
    KnowledgeHit,
    LearningProposal,
    LearningStatus,
    Priority,
    SourceType,
)
from handoff.service import HandoffService, create_service

__all__ = [
    "HandoffConfig",
    "HandoffService",
    "create_service",
    "HandoffError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "EmbeddingError",
    "TransientProviderError",
    "PersistenceError",
    "Channel",
    "ConversationInput",
    "KnowledgeHit",
    "LearningProposal",
    "LearningStatus",
    "Priority",
    "SourceType",
]
