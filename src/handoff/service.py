"""Handoff service - one object owning every component.

This is the surface the (external) HTTP layer calls into.

Usage:
    from handoff import HandoffConfig, create_service

    service = create_service(HandoffConfig.from_env())
    await service.initialize()

    conversation_id = service.queue_conversation(
        user_id="u-1", channel="web", transcript="...", shop_id=1,
    )
    hits = await service.search_knowledge("pricing", shop_id=1)

    await service.shutdown()
"""

from __future__ import annotations

import logging
import time
from typing import Any

from handoff.config import HandoffConfig
from handoff.conversation import ConversationStorageOptimizer, ReprocessingJob
from handoff.errors import ValidationError
from handoff.knowledge import (
    KnowledgeConflictResolver,
    KnowledgeExtractor,
    create_llm_contradiction_check,
)
from handoff.learning import (
    BatchResult,
    CorrectionInput,
    FeedbackInput,
    FeedbackIntake,
    FeedbackResult,
    LearningPipeline,
    ReviewDecision,
)
from handoff.models import (
    AuditEvent,
    ConversationInput,
    ConversationRecord,
    KnowledgeHit,
    KnowledgeItem,
    KnowledgeVersion,
    LearningProposal,
    LearningQueueItem,
    LearningStatus,
    Priority,
    parse_enum,
    validate_shop_id,
)
from handoff.monitoring import PerformanceMonitor, collect_metrics
from handoff.operators import EmbeddingCache, EmbeddingProvider, EmbeddingService, OllamaEncoder
from handoff.storage import HandoffStore


logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3
MAX_SEARCH_LIMIT = 100


class HandoffService:
    """Ingestion fast path, knowledge search and the review workflow."""

    def __init__(
        self,
        config: HandoffConfig | None = None,
        store: HandoffStore | None = None,
        embedder: EmbeddingProvider | None = None,
        llm: Any = None,
    ):
        self.config = config or HandoffConfig()
        cfg = self.config

        self.monitor = PerformanceMonitor(cfg.monitor)
        self.cache = EmbeddingCache(cfg.cache, monitor=self.monitor)
        if store is None:
            from handoff.storage.postgres import PostgresStore
            store = PostgresStore(cfg.postgres)
        self.store = store

        self.embeddings = EmbeddingService(
            embedder or OllamaEncoder(cfg.encoder),
            cache=self.cache,
            retry_policy=cfg.retry,
            monitor=self.monitor,
            config=cfg.embedding,
        )
        self.resolver = KnowledgeConflictResolver(self.store, cfg.conflict, self.monitor)
        if llm is not None and cfg.conflict.use_llm_check:
            self.resolver.set_contradiction_check(create_llm_contradiction_check(llm))

        self.pipeline = LearningPipeline(
            self.store, self.embeddings, self.resolver, cfg.pipeline, self.monitor
        )
        self.feedback = FeedbackIntake(self.pipeline)
        self.extractor = KnowledgeExtractor(llm, cfg.extractor)
        self.optimizer = ConversationStorageOptimizer(
            self.store,
            self.embeddings,
            cfg.optimizer,
            self.monitor,
            on_persisted=self._extract_insights if self.extractor.is_available() else None,
        )
        self.reprocessor = ReprocessingJob(self.store, self.embeddings, cfg.reprocess, self.monitor)
        self._initialized = False

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.store.connect()
        await self.cache.start()
        await self.optimizer.start()
        if self.config.enable_reprocessing:
            await self.reprocessor.start()
        await self.pipeline.start_drain()
        self._initialized = True
        logger.info("[Service] Ready")

    async def shutdown(self) -> None:
        """Stop background work gracefully; pending conversations are flushed first."""
        if not self._initialized:
            return
        await self.optimizer.stop()
        await self.pipeline.stop_drain()
        await self.reprocessor.stop()
        await self.cache.stop()
        await self.store.disconnect()
        self._initialized = False
        logger.info("[Service] Stopped")

    async def __aenter__(self) -> HandoffService:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ==================== Ingestion ====================

    def queue_conversation(self, conversation: ConversationInput | None = None, **fields: Any) -> str:
        """Enqueue a conversation; returns its id. Only ValidationError can escape."""
        if conversation is None:
            conversation = ConversationInput(**fields)
        return self.optimizer.queue(conversation)

    async def flush(self) -> int:
        return await self.optimizer.flush()

    async def reprocess_now(self) -> dict[str, int]:
        return await self.reprocessor.run_once()

    async def flag_conversation(
        self,
        conversation_id: str,
        reason: str,
        priority: Priority | str = Priority.NORMAL,
    ) -> bool:
        """Mark a stored conversation for human review."""
        if not reason or not reason.strip():
            raise ValidationError("a review reason is required")
        priority = parse_enum(Priority, priority, "priority")
        return await self.store.update_conversation_metadata(conversation_id, {
            "needs_review": True,
            "review_reason": reason.strip()[:1000],
            "review_priority": priority.value,
            "flagged_at": time.time(),
        })

    async def conversations_needing_review(self, limit: int = 50) -> list[ConversationRecord]:
        return await self.store.conversations_needing_review(limit)

    def storage_stats(self) -> dict[str, Any]:
        return self.optimizer.stats()

    async def _extract_insights(self, records: list[ConversationRecord]) -> None:
        for record in records:
            await self.extractor.extract_and_queue(record, self.pipeline)

    # ==================== Learning ====================

    async def submit_learning_item(self, proposal: LearningProposal | None = None, **fields: Any) -> str:
        if proposal is None:
            proposal = LearningProposal(**fields)
        item = await self.pipeline.submit(proposal)
        return item.id

    async def review_learning_item(
        self,
        item_id: str,
        decision: ReviewDecision | str,
        reviewed_by: str,
        reason: str | None = None,
    ) -> LearningStatus:
        return await self.pipeline.review(item_id, decision, reviewed_by, reason)

    async def apply_approved_items(self, shop_id: int | None = None, limit: int | None = None) -> BatchResult:
        return await self.pipeline.process_pending(limit=limit, shop_id=shop_id)

    async def submit_feedback(self, feedback: FeedbackInput | None = None, **fields: Any) -> FeedbackResult:
        if feedback is None:
            feedback = FeedbackInput(**fields)
        return await self.feedback.submit_feedback(feedback)

    async def submit_correction(self, correction: CorrectionInput | None = None, **fields: Any) -> FeedbackResult:
        if correction is None:
            correction = CorrectionInput(**fields)
        return await self.feedback.submit_correction(correction)

    async def get_learning_item(self, item_id: str) -> LearningQueueItem:
        return await self.pipeline.get(item_id)

    async def list_learning_items(
        self,
        status: LearningStatus | str | None = LearningStatus.PENDING,
        shop_id: int | None = None,
        limit: int = 50,
    ) -> list[LearningQueueItem]:
        return await self.pipeline.list_items(status, shop_id, limit)

    async def learning_metrics(self, shop_id: int | None = None) -> dict[str, Any]:
        return await self.pipeline.metrics(shop_id)

    async def audit_log(self, item_id: str) -> list[AuditEvent]:
        return await self.pipeline.audit_log(item_id)

    # ==================== Knowledge ====================

    async def search_knowledge(
        self,
        query_text: str,
        shop_id: int,
        limit: int = 5,
        category: str | None = None,
        threshold: float | None = None,
    ) -> list[KnowledgeHit]:
        """Knowledge items for ``shop_id`` ranked by similarity to the query."""
        if not isinstance(query_text, str) or len(query_text.strip()) < MIN_QUERY_LENGTH:
            raise ValidationError(f"query must be at least {MIN_QUERY_LENGTH} characters")
        validate_shop_id(shop_id)
        if not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}")
        threshold = self.config.search_threshold if threshold is None else threshold

        async with self.monitor.measure("knowledge_search"):
            embedding = await self.embeddings.embed(query_text.strip())
            hits = await self.store.similar_knowledge(embedding, shop_id, limit, category)
        return [h for h in hits if h.similarity >= threshold]

    async def knowledge_history(self, knowledge_id: str) -> list[KnowledgeVersion]:
        return await self.store.knowledge_history(knowledge_id)

    async def restore_knowledge_version(
        self, knowledge_id: str, version: int, restored_by: str = "system"
    ) -> KnowledgeItem:
        """Roll an item back to an earlier version's content, as a new version."""
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValidationError(f"version must be a positive integer, got {version!r}")
        return await self.resolver.restore_version(
            knowledge_id, version, self.embeddings.embed, restored_by
        )

    # ==================== Observability ====================

    def cache_stats(self) -> dict[str, Any]:
        return self.cache.stats()

    def performance_stats(self, operation: str) -> dict[str, Any] | None:
        stats = self.monitor.stats(operation)
        return stats.to_dict() if stats else None

    def health_status(self) -> dict[str, Any]:
        """Health verdict, active alerts and the metrics behind them."""
        return collect_metrics(
            self.monitor, self.storage_stats(), self.cache_stats(), self.config.health
        )


def create_service(
    config: HandoffConfig | None = None,
    store: HandoffStore | None = None,
    embedder: EmbeddingProvider | None = None,
    llm: Any = None,
) -> HandoffService:
    """Factory for HandoffService.

    Args:
        config: Service configuration (defaults everywhere when omitted)
        store: Storage backend; PostgresStore from ``config.postgres`` when omitted
        embedder: Embedding provider; OllamaEncoder when omitted
        llm: Object with ``async generate(prompt) -> str``; enables insight
             extraction and, with ``conflict.use_llm_check``, LLM contradiction checks
    """
    config = config or HandoffConfig()
    if llm is None and config.extractor.enabled:
        from handoff.llm import LLMProvider
        llm = LLMProvider(config.llm)
    return HandoffService(config, store=store, embedder=embedder, llm=llm)
