"""Conversation Storage Optimizer - fast enqueue, batched embed-and-insert.

``queue()`` only validates and appends; it never waits on the embedding
provider or the database. A background task flushes the pending list
when it reaches ``batch_size`` or when the oldest record has waited
``flush_interval`` seconds.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from handoff.errors import PersistenceError
from handoff.models import ConversationInput, ConversationRecord
from handoff.monitoring import PerformanceMonitor
from handoff.operators.embedding import EmbeddingService
from handoff.storage import HandoffStore


logger = logging.getLogger(__name__)

PersistedHook = Callable[[list[ConversationRecord]], Awaitable[Any]]


@dataclass
class OptimizerConfig:
    """Configuration for the ConversationStorageOptimizer."""
    batch_size: int = 10
    flush_interval: float = 30.0
    max_pending: int = 1000           # soft cap: exceeding it wakes the flusher early
    persist_retry_delay: float = 5.0
    max_batch_attempts: int = 3       # failed bulk inserts before falling back to single rows
    max_record_attempts: int = 6      # failed inserts before a row is set aside regardless


@dataclass
class _Pending:
    id: str
    conversation: ConversationInput
    queued_at: float                  # wall clock, becomes created_at
    queued_mono: float
    persist_attempts: int = 0


@dataclass
class SetAsideConversation:
    """A conversation the store refused; kept in memory until requeued."""
    id: str
    conversation: ConversationInput
    error: str
    attempts: int
    queued_at: float
    set_aside_at: float


class ConversationStorageOptimizer:
    """Owns one pending list and the task that drains it."""

    def __init__(
        self,
        store: HandoffStore,
        embeddings: EmbeddingService,
        config: OptimizerConfig | None = None,
        monitor: PerformanceMonitor | None = None,
        on_persisted: PersistedHook | None = None,
    ):
        self.config = config or OptimizerConfig()
        self._store = store
        self._embeddings = embeddings
        self._monitor = monitor or PerformanceMonitor()
        self._on_persisted = on_persisted

        self._pending: deque[_Pending] = deque()
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None
        self._running = False
        self._task: asyncio.Task | None = None
        self._current_flush: asyncio.Task | None = None
        self._hook_tasks: set[asyncio.Task] = set()
        self._set_aside: list[SetAsideConversation] = []
        self._over_cap = False

        self._stats = {
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "degraded": 0,
            "flushes": 0,
            "size_flushes": 0,
            "timer_flushes": 0,
            "set_aside": 0,
        }

    # ==================== Fast Path ====================

    def queue(self, conversation: ConversationInput) -> str:
        """Validate and enqueue; returns the future conversation id.

        Raises ValidationError for bad input. Nothing downstream can
        make this raise.
        """
        start = time.perf_counter()
        valid = conversation.validate()
        entry = _Pending(
            id=str(uuid.uuid4()),
            conversation=valid,
            queued_at=time.time(),
            queued_mono=time.monotonic(),
        )
        with self._lock:
            self._pending.append(entry)
            size = len(self._pending)

        if size >= self.config.batch_size:
            self._wake()
        if size > self.config.max_pending:
            self._over_cap = True
            logger.warning("[Optimizer] %d conversations pending (soft cap %d), flushing early",
                           size, self.config.max_pending)
            self._wake()

        self._monitor.record("conversation_queue", (time.perf_counter() - start) * 1000, True)
        return entry.id

    def _wake(self) -> None:
        if self._loop is not None and self._wakeup is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.debug("[Optimizer] Started (batch=%d, interval=%.1fs)",
                     self.config.batch_size, self.config.flush_interval)

    async def stop(self) -> None:
        """Cancel the timer, let an in-flight batch finish, then flush the rest."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._current_flush and not self._current_flush.done():
            try:
                await self._current_flush
            except PersistenceError:
                pass
        try:
            await self.flush()
        except PersistenceError as e:
            logger.error("[Optimizer] %d conversations not persisted at shutdown: %s",
                         self.pending_count(), e)
        if self._hook_tasks:
            await asyncio.gather(*self._hook_tasks, return_exceptions=True)
        self._loop = None
        self._wakeup = None

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._seconds_until_due())
                trigger = "size"
            except asyncio.TimeoutError:
                trigger = "timer"
            self._wakeup.clear()
            if self._over_cap:
                # over the soft cap: take partial batches too
                self._over_cap = False
                trigger = "cap"

            self._current_flush = asyncio.create_task(self._drain(trigger))
            try:
                # shield: cancelling the loop must not abort a batch mid-transaction
                await asyncio.shield(self._current_flush)
            except PersistenceError:
                await asyncio.sleep(self.config.persist_retry_delay)

    def _seconds_until_due(self) -> float:
        with self._lock:
            oldest = self._pending[0].queued_mono if self._pending else None
        if oldest is None:
            return self.config.flush_interval
        return max(0.0, oldest + self.config.flush_interval - time.monotonic())

    # ==================== Flush ====================

    async def flush(self) -> int:
        """Persist everything pending now. Returns the number of records written."""
        return await self._drain("manual")

    async def _drain(self, trigger: str) -> int:
        """Flush batches one at a time so earlier records always land first.

        A size trigger only takes full batches; cap, timer and manual flushes
        take whatever is pending.
        """
        full_only = trigger == "size"
        written = 0
        async with self._flush_lock:
            while True:
                batch = self._take(full_only)
                if not batch:
                    break
                written += await self._flush_batch(batch, trigger)
        return written

    def _take(self, full_only: bool) -> list[_Pending]:
        with self._lock:
            if not self._pending:
                return []
            if full_only and len(self._pending) < self.config.batch_size:
                return []
            count = min(self.config.batch_size, len(self._pending))
            batch = [self._pending.popleft() for _ in range(count)]
            self._stats["processing"] = len(batch)
            return batch

    async def _flush_batch(self, batch: list[_Pending], trigger: str) -> int:
        start = time.perf_counter()
        texts = [
            (p.conversation.summary or p.conversation.transcript or "").strip()
            for p in batch
        ]
        vectors = await self._embeddings.embed_many(texts)

        records = []
        for entry, vector in zip(batch, vectors):
            conv = entry.conversation
            metadata = dict(conv.metadata)
            embedding = None
            if isinstance(vector, Exception):
                # Keep the row; the reprocessing sweep fills the embedding in later
                metadata.update({
                    "needs_reprocessing": True,
                    "embedding_error": str(vector)[:500],
                    "embedding_failed_at": time.time(),
                })
            else:
                embedding = vector
            records.append(ConversationRecord(
                id=entry.id,
                user_id=conv.user_id,
                channel=conv.channel,
                transcript=conv.transcript,
                summary=conv.summary,
                metadata=metadata,
                embedding=embedding,
                shop_id=conv.shop_id,
                created_at=entry.queued_at,
            ))

        if max(p.persist_attempts for p in batch) < self.config.max_batch_attempts:
            try:
                await self._store.insert_conversations(records)
            except PersistenceError as e:
                for entry in batch:
                    entry.persist_attempts += 1
                self._requeue(batch)
                elapsed = (time.perf_counter() - start) * 1000
                self._monitor.record("conversation_batch_insert", elapsed, False)
                logger.error("[Optimizer] Batch of %d failed, re-queued: %s", len(batch), e)
                raise
        else:
            records = await self._persist_individually(batch, records)

        degraded = sum(1 for r in records if r.embedding is None)
        elapsed = (time.perf_counter() - start) * 1000
        with self._lock:
            self._stats["processing"] = 0
            self._stats["completed"] += len(records)
            self._stats["degraded"] += degraded
            self._stats["flushes"] += 1
            if trigger in ("size", "cap"):
                self._stats["size_flushes"] += 1
            elif trigger == "timer":
                self._stats["timer_flushes"] += 1
        self._monitor.record("conversation_batch_insert", elapsed, True)

        if degraded:
            logger.warning("[Optimizer] %d of %d conversations stored without embedding",
                           degraded, len(records))
        logger.debug("[Optimizer] Flushed %d conversations (%s) in %.1fms",
                     len(records), trigger, elapsed)

        if self._on_persisted is not None and records:
            task = asyncio.create_task(self._run_hook(records))
            self._hook_tasks.add(task)
            task.add_done_callback(self._hook_tasks.discard)
        return len(records)

    async def _persist_individually(
        self, batch: list[_Pending], records: list[ConversationRecord]
    ) -> list[ConversationRecord]:
        """Insert a repeatedly failing batch one row at a time.

        Rows the store refuses are set aside once another row of the same
        batch went through, or once they hit ``max_record_attempts``.
        If nothing went through the store is treated as down and the
        batch is re-queued.
        """
        persisted: list[ConversationRecord] = []
        failed: list[tuple[_Pending, PersistenceError]] = []
        for entry, record in zip(batch, records):
            try:
                await self._store.insert_conversations([record])
            except PersistenceError as e:
                entry.persist_attempts += 1
                failed.append((entry, e))
            else:
                persisted.append(record)

        retry = []
        for entry, error in failed:
            if persisted or entry.persist_attempts >= self.config.max_record_attempts:
                self._set_aside_entry(entry, error)
            else:
                retry.append(entry)

        if retry:
            self._requeue(retry)
            self._monitor.record("conversation_batch_insert", 0.0, False)
            logger.error("[Optimizer] No row of %d could be stored, re-queued: %s",
                         len(retry), failed[0][1])
            raise failed[0][1]
        return persisted

    def _requeue(self, entries: list[_Pending]) -> None:
        with self._lock:
            self._pending.extendleft(reversed(entries))
            self._stats["processing"] = 0
            self._stats["failed"] += len(entries)

    def _set_aside_entry(self, entry: _Pending, error: PersistenceError) -> None:
        with self._lock:
            self._set_aside.append(SetAsideConversation(
                id=entry.id,
                conversation=entry.conversation,
                error=str(error)[:500],
                attempts=entry.persist_attempts,
                queued_at=entry.queued_at,
                set_aside_at=time.time(),
            ))
            self._stats["set_aside"] += 1
        logger.error("[Optimizer] Conversation %s set aside after %d failed inserts: %s",
                     entry.id, entry.persist_attempts, error)

    def set_aside(self) -> list[SetAsideConversation]:
        """Conversations the store refused, oldest first."""
        with self._lock:
            return list(self._set_aside)

    def requeue_set_aside(self) -> int:
        """Put set-aside conversations back at the end of the pending list."""
        with self._lock:
            entries = [
                _Pending(id=s.id, conversation=s.conversation,
                         queued_at=s.queued_at, queued_mono=time.monotonic())
                for s in self._set_aside
            ]
            self._set_aside.clear()
            self._pending.extend(entries)
        if entries:
            self._wake()
        return len(entries)

    async def _run_hook(self, records: list[ConversationRecord]) -> None:
        try:
            await self._on_persisted(records)
        except Exception as e:
            logger.warning("[Optimizer] Post-persist hook failed: %s", e)

    # ==================== Introspection ====================

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {"queued": len(self._pending), **self._stats}
