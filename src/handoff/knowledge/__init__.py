"""Knowledge conflict resolution and insight extraction."""

from handoff.knowledge.conflict import (
    ConflictConfig,
    KnowledgeCandidate,
    KnowledgeConflictResolver,
    create_llm_contradiction_check,
    key_terms,
    lexical_contradiction,
)
from handoff.knowledge.extractor import ExtractorConfig, Insight, KnowledgeExtractor

__all__ = [
    "ConflictConfig",
    "KnowledgeCandidate",
    "KnowledgeConflictResolver",
    "create_llm_contradiction_check",
    "key_terms",
    "lexical_contradiction",
    "ExtractorConfig",
    "Insight",
    "KnowledgeExtractor",
]
