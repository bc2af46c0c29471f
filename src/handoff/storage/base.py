"""Base storage interface for conversations, knowledge and the learning queue.

Each method is one atomic unit: a backend either applies all of its
writes or none of them, and raises PersistenceError on failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from handoff.models import (
    AuditEvent,
    ConversationRecord,
    KnowledgeHit,
    KnowledgeItem,
    KnowledgeVersion,
    LearningQueueItem,
    LearningStatus,
    Metadata,
    ResolutionAction,
)


@dataclass
class KnowledgeChange:
    """Knowledge-base write produced by a conflict resolution.

    ``insert`` carries a new item; ``merge`` carries the updated item
    (same id, version already bumped); ``skip`` carries only the id of
    the duplicate it defers to.
    """
    action: ResolutionAction
    item: KnowledgeItem | None = None
    target_id: str | None = None
    details: Metadata = field(default_factory=dict)

    @property
    def knowledge_item_id(self) -> str | None:
        return self.item.id if self.item else self.target_id


class HandoffStore(ABC):
    """Abstract persistence backend."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection / initialize storage."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection / cleanup resources."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    # ==================== Conversations ====================

    @abstractmethod
    async def insert_conversations(self, records: list[ConversationRecord]) -> None:
        """Insert a whole flush batch in one transaction, preserving order."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        pass

    @abstractmethod
    async def list_conversations(self, limit: int = 100) -> list[ConversationRecord]:
        """Oldest first."""
        pass

    @abstractmethod
    async def list_conversations_for_reprocessing(self, limit: int) -> list[ConversationRecord]:
        """Rows with no embedding still flagged ``needs_reprocessing``, oldest first."""
        pass

    @abstractmethod
    async def set_conversation_embedding(
        self,
        conversation_id: str,
        embedding: list[float],
        metadata_patch: Metadata,
    ) -> bool:
        """Fill in a missing embedding. No-op (False) if one is already set."""
        pass

    @abstractmethod
    async def update_conversation_metadata(
        self,
        conversation_id: str,
        metadata_patch: Metadata,
    ) -> bool:
        pass

    @abstractmethod
    async def conversations_needing_review(self, limit: int = 50) -> list[ConversationRecord]:
        pass

    # ==================== Knowledge ====================

    @abstractmethod
    async def similar_knowledge(
        self,
        embedding: list[float],
        shop_id: int,
        limit: int = 10,
        category: str | None = None,
    ) -> list[KnowledgeHit]:
        """Cosine-similarity search within one shop, most similar first."""
        pass

    @abstractmethod
    async def get_knowledge(self, knowledge_id: str) -> KnowledgeItem | None:
        pass

    @abstractmethod
    async def knowledge_history(self, knowledge_id: str) -> list[KnowledgeVersion]:
        """Versions newest first."""
        pass

    @abstractmethod
    async def update_knowledge(self, item: KnowledgeItem, change_type: str) -> KnowledgeItem:
        """Overwrite a stored item and record ``item.version`` in its history.

        The stored row must still be at ``item.version - 1``; otherwise
        PersistenceError is raised and nothing is written. Raises
        NotFoundError for an unknown id.
        """
        pass

    # ==================== Learning Queue ====================

    @abstractmethod
    async def insert_learning_item(
        self,
        item: LearningQueueItem,
        event: AuditEvent,
    ) -> LearningQueueItem:
        """Insert a pending item and its audit event; assigns ``seq``."""
        pass

    @abstractmethod
    async def get_learning_item(self, item_id: str) -> LearningQueueItem | None:
        pass

    @abstractmethod
    async def list_learning_items(
        self,
        status: LearningStatus | None = None,
        shop_id: int | None = None,
        limit: int = 50,
    ) -> list[LearningQueueItem]:
        """Priority first (urgent > high > normal > low), then insertion order."""
        pass

    @abstractmethod
    async def list_applicable_items(
        self,
        limit: int,
        shop_id: int | None = None,
        max_attempts: int = 3,
    ) -> list[LearningQueueItem]:
        """Approved, retry-eligible items under the attempt cap, in priority order."""
        pass

    @abstractmethod
    async def transition_learning_item(
        self,
        item_id: str,
        expected: LearningStatus,
        new_status: LearningStatus,
        event: AuditEvent,
        changes: dict[str, Any] | None = None,
    ) -> LearningQueueItem | None:
        """Conditionally move ``item_id`` from ``expected`` to ``new_status``.

        ``changes`` may set reviewed_by, reviewed_at, rejection_reason,
        review_cycles, or carry a ``metadata`` patch. Returns the updated
        item, or None when the item was not in ``expected``.
        """
        pass

    @abstractmethod
    async def apply_learning_item(
        self,
        item_id: str,
        change: KnowledgeChange,
        event: AuditEvent,
    ) -> LearningQueueItem | None:
        """Claim an approved item and write its knowledge change atomically.

        Returns None when the item is no longer ``approved`` (someone else
        applied it first); nothing is written in that case.
        """
        pass

    @abstractmethod
    async def update_learning_metadata(self, item_id: str, metadata_patch: Metadata) -> None:
        pass

    @abstractmethod
    async def list_audit_events(self, item_id: str) -> list[AuditEvent]:
        """Oldest first."""
        pass

    @abstractmethod
    async def learning_counts(self, shop_id: int | None = None) -> dict[str, Any]:
        """Raw counts for metrics.

        Returns ``{"by_status": {...}, "applied_today": int,
        "flagged": int, "top_categories": [(category, count), ...]}``.
        """
        pass
