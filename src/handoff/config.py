"""Top-level configuration, assembled from per-component dataclasses."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from handoff.conversation import OptimizerConfig, ReprocessConfig
from handoff.knowledge import ConflictConfig, ExtractorConfig
from handoff.learning import PipelineConfig
from handoff.llm import LLMConfig
from handoff.monitoring import HealthConfig, MonitorConfig
from handoff.operators import CacheConfig, EmbeddingConfig, EncoderConfig, RetryPolicy
from handoff.storage.postgres import PostgresConfig


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class HandoffConfig:
    """Configuration for the whole ingestion and curation service."""
    cache: CacheConfig = field(default_factory=CacheConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    reprocess: ReprocessConfig = field(default_factory=ReprocessConfig)
    conflict: ConflictConfig = field(default_factory=ConflictConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)

    enable_reprocessing: bool = True
    search_threshold: float = 0.5
    log_level: str = "INFO"

    def __post_init__(self):
        # One embedding width everywhere
        dim = self.encoder.embedding_dim
        self.embedding.embedding_dim = dim
        self.pipeline.embedding_dim = dim
        self.postgres.embedding_dim = dim

    @classmethod
    def from_env(cls) -> HandoffConfig:
        """Build configuration from environment variables (and ``.env``)."""
        load_dotenv()

        encoder = EncoderConfig(
            embedding_model=os.getenv("EMBEDDING_MODEL", "nomic-embed-text"),
            embedding_dim=_env_int("EMBEDDING_DIM", 768),
            ollama_host=os.getenv("OLLAMA_BASE_URL") or None,
        )
        return cls(
            encoder=encoder,
            embedding=EmbeddingConfig(
                timeout=_env_float("EMBEDDING_TIMEOUT", 30.0),
                max_concurrency=_env_int("EMBEDDING_CONCURRENCY", 3),
            ),
            optimizer=OptimizerConfig(
                batch_size=_env_int("BATCH_SIZE", 10),
                flush_interval=_env_float("FLUSH_INTERVAL", 30.0),
            ),
            health=HealthConfig(
                queue_warning=_env_int("QUEUE_WARNING", 100),
                queue_critical=_env_int("QUEUE_CRITICAL", 500),
            ),
            pipeline=PipelineConfig(
                drain_interval=_env_float("LEARNING_DRAIN_INTERVAL", 0) or None,
            ),
            extractor=ExtractorConfig(
                enabled=_env_bool("KNOWLEDGE_EXTRACTION", False),
            ),
            postgres=PostgresConfig(
                host=os.getenv("POSTGRES_HOST", "localhost"),
                port=_env_int("POSTGRES_PORT", 5432),
                database=os.getenv("POSTGRES_DB", "handoff"),
                user=os.getenv("POSTGRES_USER", ""),
                password=os.getenv("POSTGRES_PASSWORD", ""),
            ),
            llm=LLMConfig(model=os.getenv("MODEL", "gpt-4o-mini")),
            enable_reprocessing=_env_bool("REPROCESSING_ENABLED", True),
            log_level=os.getenv("HANDOFF_LOG_LEVEL", "INFO"),
        )
