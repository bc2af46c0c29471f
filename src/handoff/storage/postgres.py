"""PostgreSQL + pgvector store.

Vectors travel as pgvector text literals (``'[0.1,0.2]'::vector``) so
no driver-side codec is needed. Every write method runs in a single
transaction; driver errors surface as PersistenceError after rollback.
"""

from __future__ import annotations

import functools
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import asyncpg

from handoff.errors import HandoffError, NotFoundError, PersistenceError
from handoff.models import (
    AuditEvent,
    Channel,
    ConversationRecord,
    KnowledgeHit,
    KnowledgeItem,
    KnowledgeVersion,
    LearningQueueItem,
    LearningStatus,
    Metadata,
    Priority,
    ResolutionAction,
    SourceType,
)
from handoff.storage.base import HandoffStore, KnowledgeChange


logger = logging.getLogger(__name__)

T = TypeVar("T")


CREATE_SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS conversation_memory (
    id UUID PRIMARY KEY,
    user_id VARCHAR(255) NOT NULL,
    channel VARCHAR(16) NOT NULL,
    shop_id INT,
    transcript TEXT,
    summary TEXT,
    embedding VECTOR({dim}),
    metadata JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (COALESCE(transcript, '') <> '' OR COALESCE(summary, '') <> '')
);

CREATE TABLE IF NOT EXISTS knowledge_base_rag (
    id UUID PRIMARY KEY,
    shop_id INT NOT NULL CHECK (shop_id > 0),
    category VARCHAR(64) NOT NULL DEFAULT 'general',
    content TEXT NOT NULL,
    source VARCHAR(64) NOT NULL DEFAULT '',
    confidence FLOAT,
    version INT NOT NULL DEFAULT 1,
    embedding VECTOR({dim}) NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Content history; a merge adds a row instead of overwriting
CREATE TABLE IF NOT EXISTS knowledge_versions (
    id BIGSERIAL PRIMARY KEY,
    knowledge_id UUID NOT NULL REFERENCES knowledge_base_rag(id) ON DELETE CASCADE,
    version INT NOT NULL,
    content TEXT NOT NULL,
    change_type VARCHAR(16) NOT NULL,
    source VARCHAR(64) NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (knowledge_id, version)
);

CREATE TABLE IF NOT EXISTS learning_queue (
    id UUID PRIMARY KEY,
    seq BIGSERIAL,
    shop_id INT NOT NULL CHECK (shop_id > 0),
    source_type VARCHAR(16) NOT NULL,
    source_id VARCHAR(255) NOT NULL DEFAULT '',
    proposed_content TEXT NOT NULL,
    category VARCHAR(64) NOT NULL DEFAULT 'general',
    confidence_score FLOAT NOT NULL CHECK (confidence_score BETWEEN 0 AND 100),
    priority VARCHAR(8) NOT NULL,
    priority_rank SMALLINT NOT NULL,
    status VARCHAR(16) NOT NULL DEFAULT 'pending',
    reviewed_by VARCHAR(255),
    reviewed_at TIMESTAMPTZ,
    rejection_reason TEXT,
    review_cycles INT NOT NULL DEFAULT 0,
    metadata JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Append-only
CREATE TABLE IF NOT EXISTS learning_audit_log (
    id BIGSERIAL PRIMARY KEY,
    item_id UUID NOT NULL,
    from_status VARCHAR(16),
    to_status VARCHAR(16) NOT NULL,
    actor VARCHAR(255) NOT NULL,
    reason TEXT,
    details JSONB NOT NULL DEFAULT '{{}}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_conversation_created ON conversation_memory(created_at);
CREATE INDEX IF NOT EXISTS idx_conversation_unembedded
    ON conversation_memory(created_at) WHERE embedding IS NULL;
CREATE INDEX IF NOT EXISTS idx_knowledge_embedding
    ON knowledge_base_rag USING hnsw (embedding vector_cosine_ops);
CREATE INDEX IF NOT EXISTS idx_knowledge_shop ON knowledge_base_rag(shop_id);
CREATE INDEX IF NOT EXISTS idx_knowledge_category ON knowledge_base_rag(shop_id, category);
CREATE INDEX IF NOT EXISTS idx_knowledge_metadata ON knowledge_base_rag USING gin(metadata);
CREATE INDEX IF NOT EXISTS idx_learning_drain
    ON learning_queue(status, priority_rank DESC, seq);
CREATE INDEX IF NOT EXISTS idx_learning_shop ON learning_queue(shop_id, status);
CREATE INDEX IF NOT EXISTS idx_audit_item ON learning_audit_log(item_id, id);
"""

DROP_SCHEMA_SQL = """
DROP TABLE IF EXISTS learning_audit_log, learning_queue, knowledge_versions,
    knowledge_base_rag, conversation_memory CASCADE;
"""

_KNOWLEDGE_COLUMNS = """
    id, shop_id, category, content, source, confidence, version,
    embedding::text AS embedding, metadata, created_at, updated_at
"""

_CONVERSATION_COLUMNS = """
    id, user_id, channel, shop_id, transcript, summary,
    embedding::text AS embedding, metadata, created_at
"""

_TRANSITION_FIELDS = {
    "reviewed_by": "{}",
    "reviewed_at": "to_timestamp({})",
    "rejection_reason": "{}",
    "review_cycles": "{}",
}


def to_pgvector(vector: list[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in vector) + "]"


def from_pgvector(value: str | None) -> list[float] | None:
    if value is None:
        return None
    return [float(x) for x in json.loads(value)]


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value or {}


def _wrap_errors(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Translate driver failures into PersistenceError."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await fn(*args, **kwargs)
        except HandoffError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("[Postgres] %s failed: %s", fn.__name__, e)
            raise PersistenceError(f"{fn.__name__} failed: {e}") from e

    return wrapper


@dataclass
class PostgresConfig:
    """Configuration for PostgresStore."""
    host: str = "localhost"
    port: int = 5432
    database: str = "handoff"
    user: str = ""
    password: str = ""
    min_connections: int = 2
    max_connections: int = 10
    embedding_dim: int = 768


class PostgresStore(HandoffStore):
    """asyncpg-backed implementation of HandoffStore."""

    def __init__(self, config: PostgresConfig | None = None):
        self.config = config or PostgresConfig()
        self._pool: asyncpg.Pool | None = None
        self._connected = False

    async def connect(self) -> None:
        """Establish connection pool and ensure tables exist."""
        conn_kwargs = {
            "host": self.config.host,
            "port": self.config.port,
            "database": self.config.database,
            "min_size": self.config.min_connections,
            "max_size": self.config.max_connections,
        }
        if self.config.user:
            conn_kwargs["user"] = self.config.user
        if self.config.password:
            conn_kwargs["password"] = self.config.password

        try:
            self._pool = await asyncpg.create_pool(**conn_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(CREATE_SCHEMA_SQL.format(dim=self.config.embedding_dim))
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceError(f"could not connect to PostgreSQL: {e}") from e

        self._connected = True
        logger.info("[Postgres] Connected to %s:%s/%s",
                    self.config.host, self.config.port, self.config.database)

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
        self._connected = False

    def is_available(self) -> bool:
        return self._connected and self._pool is not None

    async def drop_schema(self) -> None:
        """Drop every table (reset script only)."""
        async with self._pool.acquire() as conn:
            await conn.execute(DROP_SCHEMA_SQL)

    # ==================== Conversations ====================

    @_wrap_errors
    async def insert_conversations(self, records: list[ConversationRecord]) -> None:
        rows = [
            (
                r.id,
                r.user_id,
                r.channel.value,
                r.shop_id,
                r.transcript,
                r.summary,
                to_pgvector(r.embedding) if r.embedding is not None else None,
                json.dumps(r.metadata),
                r.created_at,
            )
            for r in records
        ]
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO conversation_memory (
                        id, user_id, channel, shop_id, transcript, summary,
                        embedding, metadata, created_at
                    )
                    VALUES ($1::uuid, $2, $3, $4, $5, $6, $7::text::vector, $8::jsonb, to_timestamp($9))
                    """,
                    rows,
                )

    @_wrap_errors
    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversation_memory WHERE id = $1::uuid",
                conversation_id,
            )
            return self._row_to_conversation(row) if row else None

    @_wrap_errors
    async def list_conversations(self, limit: int = 100) -> list[ConversationRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversation_memory "
                "ORDER BY created_at LIMIT $1",
                limit,
            )
            return [self._row_to_conversation(r) for r in rows]

    @_wrap_errors
    async def list_conversations_for_reprocessing(self, limit: int) -> list[ConversationRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversation_memory
                WHERE embedding IS NULL
                  AND (metadata->>'needs_reprocessing')::boolean IS TRUE
                ORDER BY created_at
                LIMIT $1
                """,
                limit,
            )
            return [self._row_to_conversation(r) for r in rows]

    @_wrap_errors
    async def set_conversation_embedding(
        self,
        conversation_id: str,
        embedding: list[float],
        metadata_patch: Metadata,
    ) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE conversation_memory
                SET embedding = $2::text::vector, metadata = metadata || $3::jsonb
                WHERE id = $1::uuid AND embedding IS NULL
                """,
                conversation_id,
                to_pgvector(embedding),
                json.dumps(metadata_patch),
            )
            return result == "UPDATE 1"

    @_wrap_errors
    async def update_conversation_metadata(
        self,
        conversation_id: str,
        metadata_patch: Metadata,
    ) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE conversation_memory SET metadata = metadata || $2::jsonb WHERE id = $1::uuid",
                conversation_id,
                json.dumps(metadata_patch),
            )
            return result == "UPDATE 1"

    @_wrap_errors
    async def conversations_needing_review(self, limit: int = 50) -> list[ConversationRecord]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversation_memory
                WHERE (metadata->>'needs_review')::boolean IS TRUE
                ORDER BY (metadata->>'flagged_at')::float DESC NULLS LAST
                LIMIT $1
                """,
                limit,
            )
            return [self._row_to_conversation(r) for r in rows]

    # ==================== Knowledge ====================

    @_wrap_errors
    async def similar_knowledge(
        self,
        embedding: list[float],
        shop_id: int,
        limit: int = 10,
        category: str | None = None,
    ) -> list[KnowledgeHit]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_KNOWLEDGE_COLUMNS},
                       1 - (embedding <=> $1::text::vector) AS similarity
                FROM knowledge_base_rag
                WHERE shop_id = $2 AND ($3::text IS NULL OR category = $3)
                ORDER BY embedding <=> $1::text::vector
                LIMIT $4
                """,
                to_pgvector(embedding),
                shop_id,
                category,
                limit,
            )
            return [KnowledgeHit(self._row_to_knowledge(r), float(r["similarity"])) for r in rows]

    @_wrap_errors
    async def get_knowledge(self, knowledge_id: str) -> KnowledgeItem | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_KNOWLEDGE_COLUMNS} FROM knowledge_base_rag WHERE id = $1::uuid",
                knowledge_id,
            )
            return self._row_to_knowledge(row) if row else None

    @_wrap_errors
    async def knowledge_history(self, knowledge_id: str) -> list[KnowledgeVersion]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT knowledge_id, version, content, change_type, source, created_at
                FROM knowledge_versions WHERE knowledge_id = $1::uuid
                ORDER BY version DESC
                """,
                knowledge_id,
            )
            return [
                KnowledgeVersion(
                    knowledge_id=str(r["knowledge_id"]),
                    version=r["version"],
                    content=r["content"],
                    change_type=r["change_type"],
                    source=r["source"],
                    created_at=r["created_at"].timestamp(),
                )
                for r in rows
            ]

    @_wrap_errors
    async def update_knowledge(self, item: KnowledgeItem, change_type: str) -> KnowledgeItem:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT 1 FROM knowledge_base_rag WHERE id = $1::uuid", item.id
                )
                if exists is None:
                    raise NotFoundError(f"knowledge item {item.id} not found")
                await self._merge_knowledge(conn, item, change_type)
        return item

    # ==================== Learning Queue ====================

    @_wrap_errors
    async def insert_learning_item(
        self,
        item: LearningQueueItem,
        event: AuditEvent,
    ) -> LearningQueueItem:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    INSERT INTO learning_queue (
                        id, shop_id, source_type, source_id, proposed_content, category,
                        confidence_score, priority, priority_rank, status, metadata, created_at
                    )
                    VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, to_timestamp($12))
                    RETURNING *
                    """,
                    item.id,
                    item.shop_id,
                    item.source_type.value,
                    item.source_id,
                    item.proposed_content,
                    item.category,
                    item.confidence_score,
                    item.priority.value,
                    item.priority.rank,
                    item.status.value,
                    json.dumps(item.metadata),
                    item.created_at,
                )
                await self._insert_audit(conn, event)
                return self._row_to_learning(row)

    @_wrap_errors
    async def get_learning_item(self, item_id: str) -> LearningQueueItem | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM learning_queue WHERE id = $1::uuid", item_id)
            return self._row_to_learning(row) if row else None

    @_wrap_errors
    async def list_learning_items(
        self,
        status: LearningStatus | None = None,
        shop_id: int | None = None,
        limit: int = 50,
    ) -> list[LearningQueueItem]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM learning_queue
                WHERE ($1::text IS NULL OR status = $1)
                  AND ($2::int IS NULL OR shop_id = $2)
                ORDER BY priority_rank DESC, seq
                LIMIT $3
                """,
                status.value if status else None,
                shop_id,
                limit,
            )
            return [self._row_to_learning(r) for r in rows]

    @_wrap_errors
    async def list_applicable_items(
        self,
        limit: int,
        shop_id: int | None = None,
        max_attempts: int = 3,
    ) -> list[LearningQueueItem]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM learning_queue
                WHERE status = 'approved'
                  AND ($1::int IS NULL OR shop_id = $1)
                  AND COALESCE((metadata->>'retry_eligible')::boolean, true)
                  AND COALESCE((metadata->>'apply_attempts')::int, 0) < $2
                ORDER BY priority_rank DESC, seq
                LIMIT $3
                """,
                shop_id,
                max_attempts,
                limit,
            )
            return [self._row_to_learning(r) for r in rows]

    @_wrap_errors
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

        params: list[Any] = [item_id, expected.value, new_status.value, json.dumps(metadata_patch)]
        assignments = ["status = $3", "metadata = metadata || $4::jsonb"]
        for name, value in changes.items():
            if name not in _TRANSITION_FIELDS:
                raise ValueError(f"unsupported transition field: {name}")
            params.append(value)
            assignments.append(f"{name} = " + _TRANSITION_FIELDS[name].format(f"${len(params)}"))

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE learning_queue SET {", ".join(assignments)}
                    WHERE id = $1::uuid AND status = $2
                    RETURNING *
                    """,
                    *params,
                )
                if row is None:
                    return None
                await self._insert_audit(conn, event)
                return self._row_to_learning(row)

    @_wrap_errors
    async def apply_learning_item(
        self,
        item_id: str,
        change: KnowledgeChange,
        event: AuditEvent,
    ) -> LearningQueueItem | None:
        patch = {
            "knowledge_item_id": change.knowledge_item_id,
            "resolution": change.action.value,
            **change.details,
        }
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                # Row lock: a concurrent applier blocks here, then sees status='applied'
                row = await conn.fetchrow(
                    """
                    UPDATE learning_queue
                    SET status = 'applied', metadata = metadata || $2::jsonb
                    WHERE id = $1::uuid AND status = 'approved'
                    RETURNING *
                    """,
                    item_id,
                    json.dumps(patch),
                )
                if row is None:
                    return None

                if change.action == ResolutionAction.INSERT:
                    await self._insert_knowledge(conn, change.item)
                elif change.action == ResolutionAction.MERGE:
                    await self._merge_knowledge(conn, change.item)

                await self._insert_audit(conn, event)
                return self._row_to_learning(row)

    @_wrap_errors
    async def update_learning_metadata(self, item_id: str, metadata_patch: Metadata) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE learning_queue SET metadata = metadata || $2::jsonb WHERE id = $1::uuid",
                item_id,
                json.dumps(metadata_patch),
            )

    @_wrap_errors
    async def list_audit_events(self, item_id: str) -> list[AuditEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM learning_audit_log WHERE item_id = $1::uuid ORDER BY id",
                item_id,
            )
            return [
                AuditEvent(
                    item_id=str(r["item_id"]),
                    from_status=LearningStatus(r["from_status"]) if r["from_status"] else None,
                    to_status=LearningStatus(r["to_status"]),
                    actor=r["actor"],
                    reason=r["reason"],
                    details=_json(r["details"]),
                    created_at=r["created_at"].timestamp(),
                )
                for r in rows
            ]

    @_wrap_errors
    async def learning_counts(self, shop_id: int | None = None) -> dict[str, Any]:
        async with self._pool.acquire() as conn:
            status_rows = await conn.fetch(
                """
                SELECT status, COUNT(*) AS n FROM learning_queue
                WHERE ($1::int IS NULL OR shop_id = $1)
                GROUP BY status
                """,
                shop_id,
            )
            applied_today = await conn.fetchval(
                """
                SELECT COUNT(*) FROM learning_audit_log a
                JOIN learning_queue q ON q.id = a.item_id
                WHERE a.to_status = 'applied'
                  AND a.created_at >= date_trunc('day', NOW())
                  AND ($1::int IS NULL OR q.shop_id = $1)
                """,
                shop_id,
            )
            flagged = await conn.fetchval(
                """
                SELECT COUNT(*) FROM learning_audit_log a
                JOIN learning_queue q ON q.id = a.item_id
                WHERE a.details->>'action' = 'flag-for-review'
                  AND ($1::int IS NULL OR q.shop_id = $1)
                """,
                shop_id,
            )
            category_rows = await conn.fetch(
                """
                SELECT category, COUNT(*) AS n FROM learning_queue
                WHERE status = 'applied' AND ($1::int IS NULL OR shop_id = $1)
                GROUP BY category ORDER BY n DESC, category LIMIT 5
                """,
                shop_id,
            )
        return {
            "by_status": {r["status"]: r["n"] for r in status_rows},
            "applied_today": applied_today or 0,
            "flagged": flagged or 0,
            "top_categories": [(r["category"], r["n"]) for r in category_rows],
        }

    # ==================== Helpers ====================

    async def _insert_knowledge(self, conn, item: KnowledgeItem) -> None:
        await conn.execute(
            """
            INSERT INTO knowledge_base_rag (
                id, shop_id, category, content, source, confidence, version,
                embedding, metadata, created_at, updated_at
            )
            VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8::text::vector, $9::jsonb,
                    to_timestamp($10), to_timestamp($11))
            """,
            item.id,
            item.shop_id,
            item.category,
            item.content,
            item.source,
            item.confidence,
            item.version,
            to_pgvector(item.embedding),
            json.dumps(item.metadata),
            item.created_at,
            item.updated_at,
        )
        await self._insert_version(conn, item, ResolutionAction.INSERT.value)

    async def _merge_knowledge(
        self, conn, item: KnowledgeItem, change_type: str = ResolutionAction.MERGE.value
    ) -> None:
        result = await conn.execute(
            """
            UPDATE knowledge_base_rag
            SET content = $2, embedding = $3::text::vector, confidence = $4, version = $5,
                metadata = $6::jsonb, updated_at = to_timestamp($7)
            WHERE id = $1::uuid AND version = $5 - 1
            """,
            item.id,
            item.content,
            to_pgvector(item.embedding),
            item.confidence,
            item.version,
            json.dumps(item.metadata),
            item.updated_at,
        )
        if result != "UPDATE 1":
            raise PersistenceError(f"knowledge item {item.id} changed while writing version {item.version}")
        await self._insert_version(conn, item, change_type)

    async def _insert_version(self, conn, item: KnowledgeItem, change_type: str) -> None:
        await conn.execute(
            """
            INSERT INTO knowledge_versions (knowledge_id, version, content, change_type, source)
            VALUES ($1::uuid, $2, $3, $4, $5)
            """,
            item.id,
            item.version,
            item.content,
            change_type,
            item.source,
        )

    async def _insert_audit(self, conn, event: AuditEvent) -> None:
        await conn.execute(
            """
            INSERT INTO learning_audit_log (item_id, from_status, to_status, actor, reason, details, created_at)
            VALUES ($1::uuid, $2, $3, $4, $5, $6::jsonb, to_timestamp($7))
            """,
            event.item_id,
            event.from_status.value if event.from_status else None,
            event.to_status.value,
            event.actor,
            event.reason,
            json.dumps(event.details),
            event.created_at,
        )

    def _row_to_conversation(self, row) -> ConversationRecord:
        return ConversationRecord(
            id=str(row["id"]),
            user_id=row["user_id"],
            channel=Channel(row["channel"]),
            transcript=row["transcript"],
            summary=row["summary"],
            metadata=_json(row["metadata"]),
            embedding=from_pgvector(row["embedding"]),
            shop_id=row["shop_id"],
            created_at=row["created_at"].timestamp(),
        )

    def _row_to_knowledge(self, row) -> KnowledgeItem:
        return KnowledgeItem(
            id=str(row["id"]),
            shop_id=row["shop_id"],
            content=row["content"],
            category=row["category"],
            source=row["source"],
            confidence=row["confidence"],
            embedding=from_pgvector(row["embedding"]) or [],
            metadata=_json(row["metadata"]),
            version=row["version"],
            created_at=row["created_at"].timestamp(),
            updated_at=row["updated_at"].timestamp(),
        )

    def _row_to_learning(self, row) -> LearningQueueItem:
        return LearningQueueItem(
            id=str(row["id"]),
            shop_id=row["shop_id"],
            source_type=SourceType(row["source_type"]),
            source_id=row["source_id"],
            proposed_content=row["proposed_content"],
            confidence_score=row["confidence_score"],
            priority=Priority(row["priority"]),
            status=LearningStatus(row["status"]),
            category=row["category"],
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"].timestamp() if row["reviewed_at"] else None,
            rejection_reason=row["rejection_reason"],
            review_cycles=row["review_cycles"],
            metadata=_json(row["metadata"]),
            seq=row["seq"],
            created_at=row["created_at"].timestamp(),
        )
