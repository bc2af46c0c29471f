"""Data models for conversation ingestion and knowledge curation."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from handoff.errors import ValidationError


MAX_METADATA_BYTES = 8192
MAX_USER_ID_LENGTH = 255
KNOWLEDGE_MIN_LENGTH = 10
KNOWLEDGE_MAX_LENGTH = 10000

Metadata = dict[str, Any]


class Channel(str, Enum):
    """Where a conversation took place."""
    WEB = "web"
    TELEGRAM = "telegram"
    API = "api"
    VOICE = "voice"


class SourceType(str, Enum):
    """Origin of a proposed knowledge update."""
    FEEDBACK = "feedback"
    CORRECTION = "correction"
    CONVERSATION = "conversation"


class Priority(str, Enum):
    """Review priority of a learning item."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class LearningStatus(str, Enum):
    """Approval state of a learning item."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"


class ConflictRelation(str, Enum):
    """How a candidate relates to an existing knowledge item."""
    DUPLICATE = "duplicate"
    NEAR_DUPLICATE = "near-duplicate"
    CONTRADICTION_CANDIDATE = "contradiction-candidate"
    UNRELATED = "unrelated"


class ResolutionAction(str, Enum):
    """What the pipeline does with an approved item."""
    SKIP = "skip"
    MERGE = "merge"
    FLAG_FOR_REVIEW = "flag-for-review"
    INSERT = "insert"


# ==================== Validators ====================

def validate_metadata(metadata: Any, max_bytes: int = MAX_METADATA_BYTES) -> Metadata:
    """Check that metadata is a string-keyed JSON map within the size cap.

    Returns a shallow copy so callers cannot mutate stored state.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be a mapping")
    for key in metadata:
        if not isinstance(key, str):
            raise ValidationError(f"metadata keys must be strings, got {type(key).__name__}")
    try:
        encoded = json.dumps(metadata, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"metadata is not JSON-serializable: {e}") from e
    if len(encoded.encode("utf-8")) > max_bytes:
        raise ValidationError(f"metadata exceeds {max_bytes} bytes when serialized")
    return dict(metadata)


def validate_shop_id(shop_id: Any) -> int:
    if isinstance(shop_id, bool) or not isinstance(shop_id, int) or shop_id <= 0:
        raise ValidationError(f"shop_id must be a positive integer, got {shop_id!r}")
    return shop_id


def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("user_id must be a non-empty string")
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError(f"user_id exceeds {MAX_USER_ID_LENGTH} characters")
    return user_id.strip()


def validate_channel(channel: Any) -> Channel:
    if isinstance(channel, Channel):
        return channel
    if not isinstance(channel, str) or not channel.strip():
        raise ValidationError("channel must be a non-empty string")
    try:
        return Channel(channel.strip().lower())
    except ValueError:
        allowed = ", ".join(c.value for c in Channel)
        raise ValidationError(f"unknown channel {channel!r} (expected one of: {allowed})") from None


def validate_knowledge_content(content: Any) -> str:
    if not isinstance(content, str):
        raise ValidationError("content must be a string")
    text = content.strip()
    if len(text) < KNOWLEDGE_MIN_LENGTH:
        raise ValidationError(f"content must be at least {KNOWLEDGE_MIN_LENGTH} characters")
    if len(text) > KNOWLEDGE_MAX_LENGTH:
        raise ValidationError(f"content must be at most {KNOWLEDGE_MAX_LENGTH} characters")
    return text


def parse_enum(enum_cls: type[Enum], value: Any, name: str) -> Any:
    """Coerce a raw value to ``enum_cls`` or raise ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"invalid {name} {value!r} (expected one of: {allowed})") from None


# ==================== Conversations ====================

@dataclass
class ConversationInput:
    """What a caller hands to the storage optimizer."""
    user_id: str
    channel: str | Channel
    transcript: str | None = None
    summary: str | None = None
    metadata: Metadata = field(default_factory=dict)
    shop_id: int | None = None

    def validate(self) -> ConversationInput:
        """Return a normalized copy or raise ValidationError."""
        transcript = (self.transcript or "").strip() or None
        summary = (self.summary or "").strip() or None
        if transcript is None and summary is None:
            raise ValidationError("one of transcript or summary must be non-empty")
        return ConversationInput(
            user_id=validate_user_id(self.user_id),
            channel=validate_channel(self.channel),
            transcript=transcript,
            summary=summary,
            metadata=validate_metadata(self.metadata),
            shop_id=validate_shop_id(self.shop_id) if self.shop_id is not None else None,
        )


@dataclass
class ConversationRecord:
    """A persisted conversation row."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ""
    channel: Channel = Channel.WEB
    transcript: str | None = None
    summary: str | None = None
    metadata: Metadata = field(default_factory=dict)
    embedding: list[float] | None = None
    shop_id: int | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def embedding_text(self) -> str:
        return (self.summary or self.transcript or "").strip()

    @property
    def needs_reprocessing(self) -> bool:
        return self.embedding is None and bool(self.metadata.get("needs_reprocessing"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "channel": self.channel.value,
            "transcript": self.transcript,
            "summary": self.summary,
            "metadata": self.metadata,
            "embedding": self.embedding,
            "shop_id": self.shop_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationRecord:
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            user_id=data.get("user_id", ""),
            channel=Channel(data.get("channel", "web")),
            transcript=data.get("transcript"),
            summary=data.get("summary"),
            metadata=data.get("metadata") or {},
            embedding=data.get("embedding"),
            shop_id=data.get("shop_id"),
            created_at=data.get("created_at", time.time()),
        )


# ==================== Knowledge ====================

@dataclass
class KnowledgeItem:
    """A curated, vector-searchable fact scoped to one shop."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    shop_id: int = 0
    content: str = ""
    category: str = "general"
    source: str = ""
    confidence: float | None = None
    embedding: list[float] = field(default_factory=list)
    metadata: Metadata = field(default_factory=dict)
    version: int = 1
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def validate(self, embedding_dim: int) -> None:
        validate_shop_id(self.shop_id)
        self.content = validate_knowledge_content(self.content)
        if len(self.embedding) != embedding_dim:
            raise ValidationError(
                f"embedding has {len(self.embedding)} dimensions, expected {embedding_dim}"
            )
        self.metadata = validate_metadata(self.metadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "content": self.content,
            "category": self.category,
            "source": self.source,
            "confidence": self.confidence,
            "embedding": self.embedding,
            "metadata": self.metadata,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KnowledgeItem:
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            shop_id=data.get("shop_id", 0),
            content=data.get("content", ""),
            category=data.get("category") or "general",
            source=data.get("source", ""),
            confidence=data.get("confidence"),
            embedding=data.get("embedding") or [],
            metadata=data.get("metadata") or {},
            version=data.get("version", 1),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
        )


@dataclass
class KnowledgeVersion:
    """One entry of a knowledge item's content history."""
    knowledge_id: str
    version: int
    content: str
    change_type: str = "insert"      # insert | merge | restore
    source: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "knowledge_id": self.knowledge_id,
            "version": self.version,
            "content": self.content,
            "change_type": self.change_type,
            "source": self.source,
            "created_at": self.created_at,
        }


@dataclass
class KnowledgeHit:
    """A search result with its cosine similarity to the query."""
    item: KnowledgeItem
    similarity: float


# ==================== Learning queue ====================

@dataclass
class LearningProposal:
    """A proposed knowledge update, before it enters the queue."""
    shop_id: int
    source_type: SourceType | str
    source_id: str
    proposed_content: str
    confidence_score: float = 50.0
    priority: Priority | str = Priority.NORMAL
    category: str = "general"
    metadata: Metadata = field(default_factory=dict)

    def to_item(self) -> LearningQueueItem:
        """Validate and build a pending queue item."""
        shop_id = validate_shop_id(self.shop_id)
        source_type = parse_enum(SourceType, self.source_type, "source_type")
        priority = parse_enum(Priority, self.priority, "priority")
        if not isinstance(self.proposed_content, str) or not self.proposed_content.strip():
            raise ValidationError("proposed_content must be non-empty")
        if len(self.proposed_content) > KNOWLEDGE_MAX_LENGTH:
            raise ValidationError(f"proposed_content exceeds {KNOWLEDGE_MAX_LENGTH} characters")
        try:
            score = float(self.confidence_score)
        except (TypeError, ValueError):
            raise ValidationError("confidence_score must be a number") from None
        if not 0 <= score <= 100:
            raise ValidationError(f"confidence_score must be within [0, 100], got {score}")
        return LearningQueueItem(
            shop_id=shop_id,
            source_type=source_type,
            source_id=str(self.source_id or ""),
            proposed_content=self.proposed_content.strip(),
            confidence_score=score,
            priority=priority,
            category=(self.category or "general").strip() or "general",
            metadata=validate_metadata(self.metadata),
        )


@dataclass
class LearningQueueItem:
    """A proposed knowledge change moving through the approval workflow.

    pending --approve--> approved --apply--> applied
    pending --reject---> rejected
    """
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    shop_id: int = 0
    source_type: SourceType = SourceType.FEEDBACK
    source_id: str = ""
    proposed_content: str = ""
    confidence_score: float = 50.0
    priority: Priority = Priority.NORMAL
    status: LearningStatus = LearningStatus.PENDING
    category: str = "general"
    reviewed_by: str | None = None
    reviewed_at: float | None = None
    rejection_reason: str | None = None
    review_cycles: int = 0
    metadata: Metadata = field(default_factory=dict)
    seq: int = 0                     # insertion order, assigned by the store
    created_at: float = field(default_factory=time.time)

    @property
    def knowledge_item_id(self) -> str | None:
        return self.metadata.get("knowledge_item_id")

    @property
    def retry_eligible(self) -> bool:
        return bool(self.metadata.get("retry_eligible", True))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "proposed_content": self.proposed_content,
            "confidence_score": self.confidence_score,
            "priority": self.priority.value,
            "status": self.status.value,
            "category": self.category,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at,
            "rejection_reason": self.rejection_reason,
            "review_cycles": self.review_cycles,
            "metadata": self.metadata,
            "seq": self.seq,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LearningQueueItem:
        return cls(
            id=data.get("id", str(uuid.uuid4())),
            shop_id=data.get("shop_id", 0),
            source_type=SourceType(data.get("source_type", "feedback")),
            source_id=data.get("source_id", ""),
            proposed_content=data.get("proposed_content", ""),
            confidence_score=data.get("confidence_score", 50.0),
            priority=Priority(data.get("priority", "normal")),
            status=LearningStatus(data.get("status", "pending")),
            category=data.get("category") or "general",
            reviewed_by=data.get("reviewed_by"),
            reviewed_at=data.get("reviewed_at"),
            rejection_reason=data.get("rejection_reason"),
            review_cycles=data.get("review_cycles", 0),
            metadata=data.get("metadata") or {},
            seq=data.get("seq", 0),
            created_at=data.get("created_at", time.time()),
        )


@dataclass
class AuditEvent:
    """Append-only record of a learning item status transition."""
    item_id: str
    from_status: LearningStatus | None
    to_status: LearningStatus
    actor: str = "system"
    reason: str | None = None
    details: Metadata = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "actor": self.actor,
            "reason": self.reason,
            "details": self.details,
            "created_at": self.created_at,
        }


# ==================== Conflict resolution ====================

@dataclass
class ConflictMatch:
    """An existing knowledge item compared against a candidate."""
    existing_item_id: str
    similarity: float
    relation: ConflictRelation
    existing_content: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "existing_item_id": self.existing_item_id,
            "similarity": round(self.similarity, 4),
            "relation": self.relation.value,
        }


@dataclass
class Resolution:
    """Decision on how to apply a candidate."""
    action: ResolutionAction
    target_id: str | None = None
    matches: list[ConflictMatch] = field(default_factory=list)
    reason: str = ""


@dataclass
class CacheEntry:
    """Embedding cache slot."""
    fingerprint: str
    vector: list[float]
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
