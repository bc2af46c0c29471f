"""Learning Pipeline - approval workflow from proposal to knowledge base.

    pending --approve--> approved --apply--> applied
    pending --reject---> rejected

Every transition is a conditional update on the current status, so two
reviewers (or two appliers) racing on the same item cannot both win.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from handoff.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    TransientProviderError,
    ValidationError,
)
from handoff.knowledge.conflict import KnowledgeCandidate, KnowledgeConflictResolver
from handoff.models import (
    MAX_USER_ID_LENGTH,
    AuditEvent,
    LearningProposal,
    LearningQueueItem,
    LearningStatus,
    ResolutionAction,
    parse_enum,
)
from handoff.monitoring import PerformanceMonitor
from handoff.operators.embedding import EmbeddingService
from handoff.storage import HandoffStore


logger = logging.getLogger(__name__)

_RETRYABLE = (TransientProviderError, PersistenceError)


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class PipelineConfig:
    """Configuration for the LearningPipeline."""
    batch_limit: int = 20
    max_apply_attempts: int = 3
    drain_interval: float | None = None   # seconds; None disables the periodic drain
    max_reason_length: int = 1000
    embedding_dim: int = 768


@dataclass
class ApplyOutcome:
    """Result of applying one item."""
    item_id: str
    status: LearningStatus
    action: ResolutionAction | None = None
    knowledge_item_id: str | None = None
    noop: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "status": self.status.value,
            "action": self.action.value if self.action else None,
            "knowledge_item_id": self.knowledge_item_id,
            "noop": self.noop,
        }


@dataclass
class ApplyFailure:
    id: str
    reason: str
    retry_eligible: bool

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "reason": self.reason, "retry_eligible": self.retry_eligible}


@dataclass
class BatchResult:
    """Summary of one ``process_pending`` run."""
    applied_count: int = 0
    flagged_count: int = 0
    failures: list[ApplyFailure] = field(default_factory=list)
    outcomes: list[ApplyOutcome] = field(default_factory=list)
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied_count": self.applied_count,
            "flagged_count": self.flagged_count,
            "failures": [f.to_dict() for f in self.failures],
            "duration_ms": round(self.duration_ms, 2),
        }


class LearningPipeline:
    """Moves learning items through review and into the knowledge base."""

    def __init__(
        self,
        store: HandoffStore,
        embeddings: EmbeddingService,
        resolver: KnowledgeConflictResolver,
        config: PipelineConfig | None = None,
        monitor: PerformanceMonitor | None = None,
    ):
        self.config = config or PipelineConfig()
        self._store = store
        self._embeddings = embeddings
        self._resolver = resolver
        self._monitor = monitor or PerformanceMonitor()

        self._draining = False
        self._drain_task: asyncio.Task | None = None
        self._current_batch: asyncio.Task | None = None

    # ==================== Submission & Review ====================

    async def submit(self, proposal: LearningProposal, actor: str = "system") -> LearningQueueItem:
        """Validate a proposal and queue it as ``pending``."""
        item = proposal.to_item()
        event = AuditEvent(
            item_id=item.id,
            from_status=None,
            to_status=LearningStatus.PENDING,
            actor=actor,
            details={"source_type": item.source_type.value, "source_id": item.source_id},
        )
        stored = await self._store.insert_learning_item(item, event)
        logger.info("[Learning] Queued %s item %s for shop %d (priority %s)",
                    stored.source_type.value, stored.id, stored.shop_id, stored.priority.value)
        return stored

    async def approve(self, item_id: str, reviewed_by: str) -> LearningQueueItem:
        reviewer = self._validate_reviewer(reviewed_by)
        return await self._transition(
            item_id,
            "approve",
            LearningStatus.PENDING,
            LearningStatus.APPROVED,
            actor=reviewer,
            changes={"reviewed_by": reviewer, "reviewed_at": time.time()},
        )

    async def reject(self, item_id: str, reviewed_by: str, reason: str) -> LearningQueueItem:
        """Reject a pending item. The reason is kept for audit."""
        reviewer = self._validate_reviewer(reviewed_by)
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("a rejection reason is required")
        if len(reason) > self.config.max_reason_length:
            raise ValidationError(f"reason exceeds {self.config.max_reason_length} characters")
        return await self._transition(
            item_id,
            "reject",
            LearningStatus.PENDING,
            LearningStatus.REJECTED,
            actor=reviewer,
            reason=reason.strip(),
            changes={
                "reviewed_by": reviewer,
                "reviewed_at": time.time(),
                "rejection_reason": reason.strip(),
            },
        )

    async def review(
        self,
        item_id: str,
        decision: ReviewDecision | str,
        reviewed_by: str,
        reason: str | None = None,
    ) -> LearningStatus:
        decision = parse_enum(ReviewDecision, decision, "decision")
        if decision == ReviewDecision.APPROVE:
            item = await self.approve(item_id, reviewed_by)
        else:
            item = await self.reject(item_id, reviewed_by, reason or "")
        return item.status

    async def _transition(
        self,
        item_id: str,
        action: str,
        expected: LearningStatus,
        new_status: LearningStatus,
        *,
        actor: str,
        reason: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> LearningQueueItem:
        event = AuditEvent(item_id, expected, new_status, actor=actor, reason=reason)
        updated = await self._store.transition_learning_item(
            item_id, expected, new_status, event, changes
        )
        if updated is not None:
            logger.info("[Learning] %s: %s -> %s by %s", item_id, expected.value, new_status.value, actor)
            return updated

        current = await self._store.get_learning_item(item_id)
        if current is None:
            raise NotFoundError(f"learning item {item_id} not found")
        error = ConflictError(item_id, action, current.status.value, expected.value)
        logger.warning("[Learning] %s", error)
        raise error

    def _validate_reviewer(self, reviewed_by: Any) -> str:
        if not isinstance(reviewed_by, str) or not reviewed_by.strip():
            raise ValidationError("reviewed_by must be a non-empty string")
        if len(reviewed_by) > MAX_USER_ID_LENGTH:
            raise ValidationError(f"reviewed_by exceeds {MAX_USER_ID_LENGTH} characters")
        return reviewed_by.strip()

    # ==================== Apply ====================

    async def apply(self, item_id: str) -> ApplyOutcome:
        """Resolve conflicts for an approved item and write it.

        Re-applying an ``applied`` item is a no-op. Any other status
        raises ConflictError and leaves the item untouched.
        """
        item = await self._store.get_learning_item(item_id)
        if item is None:
            raise NotFoundError(f"learning item {item_id} not found")
        if item.status == LearningStatus.APPLIED:
            return self._noop(item)
        if item.status != LearningStatus.APPROVED:
            raise ConflictError(item_id, "apply", item.status.value, LearningStatus.APPROVED.value)

        async with self._monitor.measure("learning_apply"):
            return await self._apply_approved(item)

    async def _apply_approved(self, item: LearningQueueItem) -> ApplyOutcome:
        embedding = await self._embeddings.embed(item.proposed_content)
        candidate = KnowledgeCandidate(
            content=item.proposed_content,
            embedding=embedding,
            shop_id=item.shop_id,
            category=item.category,
            metadata={
                "learning_item_id": item.id,
                "source_id": item.source_id,
                "applied_at": time.time(),
            },
        )
        resolution = await self._resolver.resolve(candidate)
        details = {
            "action": resolution.action.value,
            "matches": [m.to_dict() for m in resolution.matches[:3]],
        }

        if resolution.action == ResolutionAction.FLAG_FOR_REVIEW:
            event = AuditEvent(
                item.id,
                LearningStatus.APPROVED,
                LearningStatus.PENDING,
                reason=resolution.reason,
                details=details,
            )
            updated = await self._store.transition_learning_item(
                item.id,
                LearningStatus.APPROVED,
                LearningStatus.PENDING,
                event,
                {
                    "review_cycles": item.review_cycles + 1,
                    "metadata": {
                        "conflict_with": resolution.target_id,
                        "conflict_reason": resolution.reason,
                        "flagged_at": time.time(),
                    },
                },
            )
            if updated is None:
                return await self._lost_race(item.id)
            logger.info("[Learning] %s flagged for review: %s", item.id, resolution.reason)
            return ApplyOutcome(item.id, LearningStatus.PENDING, resolution.action)

        change = await self._resolver.build_change(
            resolution,
            candidate,
            source=f"learning_{item.source_type.value}",
            confidence=item.confidence_score / 100,
            embed=self._embeddings.embed,
        )
        if change.item is not None:
            change.item.validate(self.config.embedding_dim)

        event = AuditEvent(
            item.id,
            LearningStatus.APPROVED,
            LearningStatus.APPLIED,
            reason=resolution.reason,
            details={**details, "knowledge_item_id": change.knowledge_item_id},
        )
        updated = await self._store.apply_learning_item(item.id, change, event)
        if updated is None:
            return await self._lost_race(item.id)

        logger.info("[Learning] Applied %s (%s) -> knowledge %s",
                    item.id, resolution.action.value, change.knowledge_item_id)
        return ApplyOutcome(
            item.id, LearningStatus.APPLIED, resolution.action, change.knowledge_item_id
        )

    async def _lost_race(self, item_id: str) -> ApplyOutcome:
        """Another applier changed the item between our read and our write."""
        current = await self._store.get_learning_item(item_id)
        if current is None:
            raise NotFoundError(f"learning item {item_id} not found")
        if current.status == LearningStatus.APPLIED:
            return self._noop(current)
        raise ConflictError(item_id, "apply", current.status.value, LearningStatus.APPROVED.value)

    def _noop(self, item: LearningQueueItem) -> ApplyOutcome:
        return ApplyOutcome(
            item.id,
            LearningStatus.APPLIED,
            knowledge_item_id=item.knowledge_item_id,
            noop=True,
        )

    # ==================== Batch Mode ====================

    async def process_pending(self, limit: int | None = None, shop_id: int | None = None) -> BatchResult:
        """Apply approved items, highest priority first, then oldest.

        Items are applied one at a time; a failure is recorded on the
        item and the batch moves on.
        """
        start = time.perf_counter()
        items = await self._store.list_applicable_items(
            limit or self.config.batch_limit,
            shop_id=shop_id,
            max_attempts=self.config.max_apply_attempts,
        )
        result = BatchResult()

        for item in items:
            try:
                outcome = await self.apply(item.id)
            except Exception as e:
                await self._record_failure(item, e, result)
                continue
            result.outcomes.append(outcome)
            if outcome.status == LearningStatus.APPLIED and not outcome.noop:
                result.applied_count += 1
            elif outcome.action == ResolutionAction.FLAG_FOR_REVIEW:
                result.flagged_count += 1

        result.duration_ms = (time.perf_counter() - start) * 1000
        self._monitor.record("learning_batch", result.duration_ms, not result.failures)
        if items:
            logger.info("[Learning] Batch: %d applied, %d flagged, %d failed in %.1fms",
                        result.applied_count, result.flagged_count,
                        len(result.failures), result.duration_ms)
        return result

    async def _record_failure(self, item: LearningQueueItem, error: Exception, result: BatchResult) -> None:
        attempts = item.metadata.get("apply_attempts", 0) + 1
        retryable = isinstance(error, _RETRYABLE)
        retry_eligible = retryable and attempts < self.config.max_apply_attempts
        logger.warning("[Learning] Apply failed for %s (attempt %d, retry=%s): %s",
                       item.id, attempts, retry_eligible, error)
        try:
            await self._store.update_learning_metadata(item.id, {
                "last_error": str(error),
                "apply_attempts": attempts,
                "retry_eligible": retry_eligible,
                "last_attempt_at": time.time(),
            })
        except PersistenceError as e:
            logger.error("[Learning] Could not record failure for %s: %s", item.id, e)
        result.failures.append(ApplyFailure(item.id, str(error), retry_eligible))

    # ==================== Periodic Drain ====================

    async def start_drain(self, interval: float | None = None) -> None:
        interval = interval or self.config.drain_interval
        if not interval or self._draining:
            return
        self._draining = True
        self._drain_task = asyncio.create_task(self._drain_loop(interval))

    async def stop_drain(self) -> None:
        """Cancel the schedule; a batch already running is allowed to finish."""
        self._draining = False
        if self._drain_task:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None
        if self._current_batch and not self._current_batch.done():
            await self._current_batch
        self._current_batch = None

    async def _drain_loop(self, interval: float) -> None:
        while self._draining:
            await asyncio.sleep(interval)
            self._current_batch = asyncio.create_task(self.process_pending())
            try:
                # shield: cancelling the loop must not abort the batch
                await asyncio.shield(self._current_batch)
            except PersistenceError as e:
                logger.error("[Learning] Drain failed: %s", e)

    # ==================== Queries ====================

    async def get(self, item_id: str) -> LearningQueueItem:
        item = await self._store.get_learning_item(item_id)
        if item is None:
            raise NotFoundError(f"learning item {item_id} not found")
        return item

    async def list_items(
        self,
        status: LearningStatus | str | None = None,
        shop_id: int | None = None,
        limit: int = 50,
    ) -> list[LearningQueueItem]:
        if status is not None:
            status = parse_enum(LearningStatus, status, "status")
        if not 1 <= limit <= 1000:
            raise ValidationError("limit must be between 1 and 1000")
        return await self._store.list_learning_items(status, shop_id, limit)

    async def audit_log(self, item_id: str) -> list[AuditEvent]:
        return await self._store.list_audit_events(item_id)

    async def metrics(self, shop_id: int | None = None) -> dict[str, Any]:
        counts = await self._store.learning_counts(shop_id)
        by_status = counts["by_status"]
        applied = by_status.get(LearningStatus.APPLIED.value, 0)
        flagged = counts["flagged"]
        apply_stats = self._monitor.stats("learning_apply")
        return {
            "pending": by_status.get(LearningStatus.PENDING.value, 0),
            "approved": by_status.get(LearningStatus.APPROVED.value, 0),
            "rejected": by_status.get(LearningStatus.REJECTED.value, 0),
            "applied": applied,
            "applied_today": counts["applied_today"],
            "conflict_rate": round(flagged / (applied + flagged) * 100, 2) if applied + flagged else 0.0,
            "avg_apply_ms": round(apply_stats.avg, 2) if apply_stats else None,
            "top_categories": [{"category": c, "count": n} for c, n in counts["top_categories"]],
        }
