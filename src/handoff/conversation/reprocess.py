"""Reprocessing sweep - fills in embeddings that failed at flush time.

Runs on a fixed interval. The embedding write is conditional on the
row still having no embedding, so overlapping or repeated sweeps never
overwrite a vector.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from handoff.errors import EmbeddingError, PersistenceError, TransientProviderError
from handoff.monitoring import PerformanceMonitor
from handoff.operators.embedding import EmbeddingService
from handoff.storage import HandoffStore


logger = logging.getLogger(__name__)


@dataclass
class ReprocessConfig:
    """Configuration for the ReprocessingJob."""
    interval: float = 300.0
    batch_limit: int = 50
    max_attempts: int = 5             # after this many failures a row is abandoned


class ReprocessingJob:
    """Background job that repairs conversations stored without an embedding."""

    def __init__(
        self,
        store: HandoffStore,
        embeddings: EmbeddingService,
        config: ReprocessConfig | None = None,
        monitor: PerformanceMonitor | None = None,
    ):
        self.config = config or ReprocessConfig()
        self._store = store
        self._embeddings = embeddings
        self._monitor = monitor or PerformanceMonitor()
        self._run_lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None

    async def run_once(self) -> dict[str, int]:
        """One sweep. Returns ``{scanned, repaired, failed, abandoned}``."""
        async with self._run_lock, self._monitor.measure("conversation_reprocess"):
            records = await self._store.list_conversations_for_reprocessing(self.config.batch_limit)
            result = {"scanned": len(records), "repaired": 0, "failed": 0, "abandoned": 0}

            for record in records:
                attempts = record.metadata.get("reprocess_attempts", 0) + 1
                try:
                    vector = await self._embeddings.embed(record.embedding_text)
                except (TransientProviderError, EmbeddingError) as e:
                    patch = {"reprocess_attempts": attempts, "embedding_error": str(e)[:500]}
                    if attempts >= self.config.max_attempts:
                        patch.update({"needs_reprocessing": False, "reprocessing_abandoned": True})
                        result["abandoned"] += 1
                        logger.warning("[Reprocess] Giving up on conversation %s after %d attempts",
                                       record.id, attempts)
                    else:
                        result["failed"] += 1
                    await self._store.update_conversation_metadata(record.id, patch)
                    continue

                updated = await self._store.set_conversation_embedding(record.id, vector, {
                    "needs_reprocessing": False,
                    "embedding_error": None,
                    "reprocess_attempts": attempts,
                    "reprocessed_at": time.time(),
                })
                if updated:
                    result["repaired"] += 1

            if records:
                logger.info("[Reprocess] Swept %d: %d repaired, %d failed, %d abandoned",
                            result["scanned"], result["repaired"], result["failed"], result["abandoned"])
            return result

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.interval)
            try:
                await self.run_once()
            except PersistenceError as e:
                logger.error("[Reprocess] Sweep failed: %s", e)
