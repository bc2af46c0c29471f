"""Conversation ingestion: batching optimizer and reprocessing sweep."""

from handoff.conversation.optimizer import (
    ConversationStorageOptimizer,
    OptimizerConfig,
    SetAsideConversation,
)
from handoff.conversation.reprocess import ReprocessConfig, ReprocessingJob

__all__ = [
    "ConversationStorageOptimizer",
    "OptimizerConfig",
    "ReprocessConfig",
    "ReprocessingJob",
    "SetAsideConversation",
]
