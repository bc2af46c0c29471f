"""In-memory store backed by dicts.

Used by tests and the benchmark script. Every public method runs under
one asyncio lock and validates before mutating, so a failing call
leaves no partial state.
"""

from __future__ import annotations

import asyncio
import copy
from collections import Counter
from datetime import datetime
from typing import Any

from handoff.errors import NotFoundError, PersistenceError
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
from handoff.storage.base import HandoffStore, KnowledgeChange


_TRANSITION_FIELDS = {"reviewed_by", "reviewed_at", "rejection_reason", "review_cycles"}


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(y * y for y in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _priority_order(item: LearningQueueItem) -> tuple[int, int]:
    return (-item.priority.rank, item.seq)


class InMemoryStore(HandoffStore):
    """Dict-based implementation of HandoffStore."""

    def __init__(self):
        self._conversations: dict[str, ConversationRecord] = {}
        self._knowledge: dict[str, KnowledgeItem] = {}
        self._versions: dict[str, list[KnowledgeVersion]] = {}
        self._learning: dict[str, LearningQueueItem] = {}
        self._audit: list[AuditEvent] = []
        self._seq = 0
        self._lock = asyncio.Lock()
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    def is_available(self) -> bool:
        return self._connected

    # ==================== Conversations ====================

    async def insert_conversations(self, records: list[ConversationRecord]) -> None:
        async with self._lock:
            seen = set()
            for record in records:
                if record.id in self._conversations or record.id in seen:
                    raise PersistenceError(f"duplicate conversation id {record.id}")
                seen.add(record.id)
            for record in records:
                self._conversations[record.id] = copy.deepcopy(record)

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        record = self._conversations.get(conversation_id)
        return copy.deepcopy(record) if record else None

    async def list_conversations(self, limit: int = 100) -> list[ConversationRecord]:
        records = sorted(self._conversations.values(), key=lambda r: r.created_at)
        return copy.deepcopy(records[:limit])

    async def list_conversations_for_reprocessing(self, limit: int) -> list[ConversationRecord]:
        records = [r for r in self._conversations.values() if r.needs_reprocessing]
        records.sort(key=lambda r: r.created_at)
        return copy.deepcopy(records[:limit])

    async def set_conversation_embedding(
        self,
        conversation_id: str,
        embedding: list[float],
        metadata_patch: Metadata,
    ) -> bool:
        async with self._lock:
            record = self._conversations.get(conversation_id)
            if record is None or record.embedding is not None:
                return False
            record.embedding = list(embedding)
            record.metadata.update(metadata_patch)
            return True

    async def update_conversation_metadata(
        self,
        conversation_id: str,
        metadata_patch: Metadata,
    ) -> bool:
        async with self._lock:
            record = self._conversations.get(conversation_id)
            if record is None:
                return False
            record.metadata.update(metadata_patch)
            return True

    async def conversations_needing_review(self, limit: int = 50) -> list[ConversationRecord]:
        records = [r for r in self._conversations.values() if r.metadata.get("needs_review")]
        records.sort(key=lambda r: r.metadata.get("flagged_at", 0), reverse=True)
        return copy.deepcopy(records[:limit])

    # ==================== Knowledge ====================

    async def similar_knowledge(
        self,
        embedding: list[float],
        shop_id: int,
        limit: int = 10,
        category: str | None = None,
    ) -> list[KnowledgeHit]:
        hits = []
        for item in self._knowledge.values():
            if item.shop_id != shop_id:
                continue
            if category and item.category != category:
                continue
            hits.append(KnowledgeHit(copy.deepcopy(item), cosine_similarity(embedding, item.embedding)))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:limit]

    async def get_knowledge(self, knowledge_id: str) -> KnowledgeItem | None:
        item = self._knowledge.get(knowledge_id)
        return copy.deepcopy(item) if item else None

    async def knowledge_history(self, knowledge_id: str) -> list[KnowledgeVersion]:
        versions = self._versions.get(knowledge_id, [])
        return copy.deepcopy(sorted(versions, key=lambda v: v.version, reverse=True))

    async def update_knowledge(self, item: KnowledgeItem, change_type: str) -> KnowledgeItem:
        async with self._lock:
            existing = self._knowledge.get(item.id)
            if existing is None:
                raise NotFoundError(f"knowledge item {item.id} not found")
            if existing.version != item.version - 1:
                raise PersistenceError(
                    f"knowledge item {item.id} changed while writing version {item.version}"
                )
            stored = copy.deepcopy(item)
            self._knowledge[stored.id] = stored
            self._versions.setdefault(stored.id, []).append(KnowledgeVersion(
                knowledge_id=stored.id,
                version=stored.version,
                content=stored.content,
                change_type=change_type,
                source=stored.source,
            ))
            return copy.deepcopy(stored)

    # ==================== Learning Queue ====================

    async def insert_learning_item(
        self,
        item: LearningQueueItem,
        event: AuditEvent,
    ) -> LearningQueueItem:
        async with self._lock:
            if item.id in self._learning:
                raise PersistenceError(f"duplicate learning item id {item.id}")
            self._seq += 1
            stored = copy.deepcopy(item)
            stored.seq = self._seq
            self._learning[stored.id] = stored
            self._audit.append(copy.deepcopy(event))
            return copy.deepcopy(stored)

    async def get_learning_item(self, item_id: str) -> LearningQueueItem | None:
        item = self._learning.get(item_id)
        return copy.deepcopy(item) if item else None

    async def list_learning_items(
        self,
        status: LearningStatus | None = None,
        shop_id: int | None = None,
        limit: int = 50,
    ) -> list[LearningQueueItem]:
        items = [
            i for i in self._learning.values()
            if (status is None or i.status == status)
            and (shop_id is None or i.shop_id == shop_id)
        ]
        items.sort(key=_priority_order)
        return copy.deepcopy(items[:limit])

    async def list_applicable_items(
        self,
        limit: int,
        shop_id: int | None = None,
        max_attempts: int = 3,
    ) -> list[LearningQueueItem]:
        items = [
            i for i in self._learning.values()
            if i.status == LearningStatus.APPROVED
            and (shop_id is None or i.shop_id == shop_id)
            and i.retry_eligible
            and i.metadata.get("apply_attempts", 0) < max_attempts
        ]
        items.sort(key=_priority_order)
        return copy.deepcopy(items[:limit])

    async def transition_learning_item(
        self,
        item_id: str,
        expected: LearningStatus,
        new_status: LearningStatus,
        event: AuditEvent,
        changes: dict[str, Any] | None = None,
    ) -> LearningQueueItem | None:
        changes = dict(changes or {})
        metadata_patch = changes.pop("metadata", {})
        unknown = set(changes) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"unsupported transition fields: {sorted(unknown)}")

        async with self._lock:
            item = self._learning.get(item_id)
            if item is None or item.status != expected:
                return None
            item.status = new_status
            for name, value in changes.items():
                setattr(item, name, value)
            item.metadata.update(metadata_patch)
            self._audit.append(copy.deepcopy(event))
            return copy.deepcopy(item)

    async def apply_learning_item(
        self,
        item_id: str,
        change: KnowledgeChange,
        event: AuditEvent,
    ) -> LearningQueueItem | None:
        async with self._lock:
            item = self._learning.get(item_id)
            if item is None or item.status != LearningStatus.APPROVED:
                return None

            if change.action == ResolutionAction.MERGE:
                existing = self._knowledge.get(change.item.id)
                if existing is None or existing.version != change.item.version - 1:
                    raise PersistenceError(
                        f"knowledge item {change.item.id} changed while writing version {change.item.version}"
                    )
            elif change.action == ResolutionAction.INSERT:
                if change.item.id in self._knowledge:
                    raise PersistenceError(f"duplicate knowledge id {change.item.id}")

            # Validation done; mutate
            if change.action in (ResolutionAction.INSERT, ResolutionAction.MERGE):
                stored = copy.deepcopy(change.item)
                self._knowledge[stored.id] = stored
                self._versions.setdefault(stored.id, []).append(KnowledgeVersion(
                    knowledge_id=stored.id,
                    version=stored.version,
                    content=stored.content,
                    change_type=change.action.value,
                    source=stored.source,
                ))

            item.status = LearningStatus.APPLIED
            item.metadata.update({
                "knowledge_item_id": change.knowledge_item_id,
                "resolution": change.action.value,
                **change.details,
            })
            self._audit.append(copy.deepcopy(event))
            return copy.deepcopy(item)

    async def update_learning_metadata(self, item_id: str, metadata_patch: Metadata) -> None:
        async with self._lock:
            item = self._learning.get(item_id)
            if item is not None:
                item.metadata.update(metadata_patch)

    async def list_audit_events(self, item_id: str) -> list[AuditEvent]:
        return copy.deepcopy([e for e in self._audit if e.item_id == item_id])

    async def learning_counts(self, shop_id: int | None = None) -> dict[str, Any]:
        items = [i for i in self._learning.values() if shop_id is None or i.shop_id == shop_id]
        ids = {i.id for i in items}
        midnight = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0).timestamp()

        applied_today = sum(
            1 for e in self._audit
            if e.item_id in ids and e.to_status == LearningStatus.APPLIED and e.created_at >= midnight
        )
        flagged = sum(
            1 for e in self._audit
            if e.item_id in ids and e.details.get("action") == ResolutionAction.FLAG_FOR_REVIEW.value
        )
        categories = Counter(i.category for i in items if i.status == LearningStatus.APPLIED)
        return {
            "by_status": dict(Counter(i.status.value for i in items)),
            "applied_today": applied_today,
            "flagged": flagged,
            "top_categories": categories.most_common(5),
        }
