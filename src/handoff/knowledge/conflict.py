"""Knowledge Conflict Resolver - compares a proposed fact with what is stored.

Conflict detection strategy:
1. Similarity search within the same shop (and category, when given)
2. Classify each hit by cosine similarity thresholds
3. Below the near-duplicate band, hits sharing key terms get a
   contradiction check (lexical by default, LLM when configured)

The resolver only reads, except through ``build_change`` whose result
the caller hands to the store, and ``restore_version``.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from handoff.errors import NotFoundError
from handoff.models import (
    ConflictMatch,
    ConflictRelation,
    KnowledgeItem,
    Metadata,
    Resolution,
    ResolutionAction,
)
from handoff.monitoring import PerformanceMonitor
from handoff.storage import HandoffStore, KnowledgeChange


logger = logging.getLogger(__name__)

ContradictionCheck = Callable[[str, str], Awaitable[bool]]


CONTRADICTION_PROMPT = """Do these two statements about the same business contradict each other?

Statement A (existing):
{content_a}

Statement B (proposed):
{content_b}

A contradiction means both cannot be true at the same time. A statement that only
adds detail or is about something else is NOT a contradiction.

Respond in JSON format:
{{
    "contradicts": true/false,
    "confidence": 0.0-1.0,
    "explanation": "one sentence"
}}"""

_TOKEN = re.compile(r"[a-z0-9$][a-z0-9$'.]*")

_STOPWORDS = {
    "the", "and", "for", "are", "was", "were", "with", "that", "this", "from",
    "have", "has", "had", "our", "your", "you", "they", "them", "their", "its",
    "but", "can", "will", "would", "should", "could", "all", "any", "each",
    "been", "being", "into", "onto", "than", "then", "there", "here", "what",
    "when", "where", "which", "who", "why", "how", "also", "just", "only",
    "about", "after", "before", "per", "via", "every", "some", "more", "most",
}

_NEGATIONS = {
    "not", "no", "never", "don't", "doesn't", "isn't", "aren't", "won't",
    "can't", "cannot", "shouldn't", "wasn't", "weren't", "without", "none",
}

_ANTONYMS = [
    ("open", "closed"),
    ("available", "unavailable"),
    ("included", "excluded"),
    ("free", "paid"),
    ("accept", "refuse"),
    ("accepts", "refuses"),
    ("allow", "deny"),
    ("allowed", "prohibited"),
    ("required", "optional"),
    ("always", "never"),
    ("yes", "no"),
    ("true", "false"),
    ("increase", "decrease"),
    ("start", "stop"),
    ("enable", "disable"),
]

_NUMBER = re.compile(r"\$?\d+(?:[.,]\d+)?")


def tokenize(text: str) -> list[str]:
    return [t.rstrip(".") for t in _TOKEN.findall(text.lower())]


def key_terms(text: str) -> set[str]:
    """Significant lowercase terms: no stopwords, no negations, len >= 3."""
    return {
        t for t in tokenize(text)
        if len(t) >= 3 and t not in _STOPWORDS and t not in _NEGATIONS
    }


def lexical_contradiction(content_a: str, content_b: str) -> bool:
    """Cheap contradiction heuristic over two related statements."""
    tokens_a = set(tokenize(content_a))
    tokens_b = set(tokenize(content_b))

    # One side negated, the other not
    if bool(tokens_a & _NEGATIONS) != bool(tokens_b & _NEGATIONS):
        return True

    for pos, neg in _ANTONYMS:
        if (pos in tokens_a and neg in tokens_b) or (neg in tokens_a and pos in tokens_b):
            return True

    # Same subject, different figures ("$30" vs "$35")
    numbers_a = set(_NUMBER.findall(content_a))
    numbers_b = set(_NUMBER.findall(content_b))
    if numbers_a and numbers_b and numbers_a.isdisjoint(numbers_b):
        return True

    return False


@dataclass
class ConflictConfig:
    """Configuration for conflict detection."""
    duplicate_threshold: float = 0.95
    near_duplicate_threshold: float = 0.80
    search_limit: int = 10
    min_shared_terms: int = 2         # lexical overlap before a contradiction check
    merge_strategy: str = "replace"   # replace | concatenate
    use_llm_check: bool = False       # ask the LLM instead of the lexical heuristic


@dataclass
class KnowledgeCandidate:
    """A proposed fact to compare against the knowledge base."""
    content: str
    embedding: list[float]
    shop_id: int
    category: str | None = None
    metadata: Metadata = field(default_factory=dict)


class KnowledgeConflictResolver:
    """Finds duplicates and contradictions and picks a resolution."""

    def __init__(
        self,
        store: HandoffStore,
        config: ConflictConfig | None = None,
        monitor: PerformanceMonitor | None = None,
        contradiction_check: ContradictionCheck | None = None,
    ):
        self.config = config or ConflictConfig()
        self._store = store
        self._monitor = monitor or PerformanceMonitor()
        self._contradiction_check = contradiction_check

    def set_contradiction_check(self, callback: ContradictionCheck) -> None:
        """Use an external (e.g. LLM) check instead of the lexical heuristic."""
        self._contradiction_check = callback

    # ==================== Detection ====================

    async def detect_conflicts(self, candidate: KnowledgeCandidate) -> list[ConflictMatch]:
        """Classify the most similar stored items, most similar first."""
        async with self._monitor.measure("conflict_detection"):
            hits = await self._store.similar_knowledge(
                candidate.embedding,
                candidate.shop_id,
                limit=self.config.search_limit,
                category=candidate.category,
            )
            matches = []
            for hit in hits:
                relation = await self._classify(candidate.content, hit.item, hit.similarity)
                matches.append(ConflictMatch(
                    existing_item_id=hit.item.id,
                    similarity=hit.similarity,
                    relation=relation,
                    existing_content=hit.item.content,
                ))
            return matches

    async def _classify(
        self,
        content: str,
        existing: KnowledgeItem,
        similarity: float,
    ) -> ConflictRelation:
        if similarity >= self.config.duplicate_threshold:
            return ConflictRelation.DUPLICATE
        if similarity >= self.config.near_duplicate_threshold:
            return ConflictRelation.NEAR_DUPLICATE

        shared = key_terms(content) & key_terms(existing.content)
        if len(shared) < self.config.min_shared_terms:
            return ConflictRelation.UNRELATED
        if await self._contradicts(existing.content, content):
            return ConflictRelation.CONTRADICTION_CANDIDATE
        return ConflictRelation.UNRELATED

    async def _contradicts(self, existing: str, proposed: str) -> bool:
        if self._contradiction_check:
            try:
                return await self._contradiction_check(existing, proposed)
            except Exception as e:
                logger.warning("[Conflict] Contradiction check failed, using lexical fallback: %s", e)
        return lexical_contradiction(existing, proposed)

    # ==================== Resolution ====================

    def decide(self, matches: list[ConflictMatch]) -> Resolution:
        """Pick one action; the strongest relation wins."""
        for relation, action in (
            (ConflictRelation.DUPLICATE, ResolutionAction.SKIP),
            (ConflictRelation.NEAR_DUPLICATE, ResolutionAction.MERGE),
            (ConflictRelation.CONTRADICTION_CANDIDATE, ResolutionAction.FLAG_FOR_REVIEW),
        ):
            related = [m for m in matches if m.relation == relation]
            if related:
                best = max(related, key=lambda m: m.similarity)
                return Resolution(
                    action=action,
                    target_id=best.existing_item_id,
                    matches=matches,
                    reason=f"{relation.value} of {best.existing_item_id} "
                           f"(similarity {best.similarity:.3f})",
                )
        return Resolution(action=ResolutionAction.INSERT, matches=matches, reason="no related knowledge")

    async def resolve(self, candidate: KnowledgeCandidate) -> Resolution:
        return self.decide(await self.detect_conflicts(candidate))

    async def build_change(
        self,
        resolution: Resolution,
        candidate: KnowledgeCandidate,
        *,
        source: str,
        confidence: float | None = None,
        embed: Callable[[str], Awaitable[list[float]]] | None = None,
    ) -> KnowledgeChange:
        """Turn a resolution into the write the store should perform."""
        action = resolution.action
        if action == ResolutionAction.SKIP:
            return KnowledgeChange(
                action=action,
                target_id=resolution.target_id,
                details={"duplicate_of": resolution.target_id},
            )

        if action == ResolutionAction.INSERT:
            item = KnowledgeItem(
                shop_id=candidate.shop_id,
                content=candidate.content,
                category=candidate.category or "general",
                source=source,
                confidence=confidence,
                embedding=list(candidate.embedding),
                metadata=dict(candidate.metadata),
            )
            return KnowledgeChange(action=action, item=item)

        if action == ResolutionAction.MERGE:
            existing = await self._store.get_knowledge(resolution.target_id)
            if existing is None:
                raise NotFoundError(f"knowledge item {resolution.target_id} not found")
            return KnowledgeChange(
                action=action,
                item=await self._merged(existing, candidate, source, confidence, embed),
                details={"merged_into": existing.id},
            )

        raise ValueError(f"{action.value} does not produce a knowledge change")

    async def _merged(
        self,
        existing: KnowledgeItem,
        candidate: KnowledgeCandidate,
        source: str,
        confidence: float | None,
        embed: Callable[[str], Awaitable[list[float]]] | None,
    ) -> KnowledgeItem:
        if self.config.merge_strategy == "concatenate":
            if embed is None:
                raise ValueError("concatenate merge needs an embed function")
            content = f"{existing.content}\n\nAdditionally: {candidate.content}"
            embedding = await embed(content)
        else:
            content = candidate.content
            embedding = list(candidate.embedding)

        confidences = [c for c in (existing.confidence, confidence) if c is not None]
        metadata: dict[str, Any] = {
            **existing.metadata,
            **candidate.metadata,
            "merged_from_version": existing.version,
            "merged_by": source,
        }
        return dataclasses.replace(
            existing,
            content=content,
            embedding=embedding,
            confidence=max(confidences) if confidences else None,
            metadata=metadata,
            version=existing.version + 1,
            updated_at=time.time(),
        )

    # ==================== Rollback ====================

    async def restore_version(
        self,
        knowledge_id: str,
        version: int,
        embed: Callable[[str], Awaitable[list[float]]],
        restored_by: str = "system",
    ) -> KnowledgeItem:
        """Make an earlier version's content current again.

        The restore is written as a new version, so history only grows.
        Raises NotFoundError for an unknown item or version, and
        PersistenceError if the item changed while re-embedding.
        """
        current = await self._store.get_knowledge(knowledge_id)
        if current is None:
            raise NotFoundError(f"knowledge item {knowledge_id} not found")
        history = await self._store.knowledge_history(knowledge_id)
        target = next((v for v in history if v.version == version), None)
        if target is None:
            raise NotFoundError(f"knowledge item {knowledge_id} has no version {version}")

        restored = dataclasses.replace(
            current,
            content=target.content,
            embedding=await embed(target.content),
            metadata={
                **current.metadata,
                "restored_from_version": version,
                "restored_by": restored_by,
            },
            version=current.version + 1,
            updated_at=time.time(),
        )
        stored = await self._store.update_knowledge(restored, "restore")
        logger.info("[Conflict] Restored %s to version %d (now version %d)",
                    knowledge_id, version, stored.version)
        return stored


def create_llm_contradiction_check(llm: Any, min_confidence: float = 0.7) -> ContradictionCheck:
    """Build a contradiction check that asks an LLM.

    Args:
        llm: Object with ``async generate(prompt) -> str`` (e.g. LLMProvider).
        min_confidence: Verdicts below this confidence count as "no".
    """
    from handoff.llm import extract_json

    async def check(content_a: str, content_b: str) -> bool:
        text = await llm.generate(
            CONTRADICTION_PROMPT.format(content_a=content_a, content_b=content_b)
        )
        try:
            result = extract_json(text)
        except ValueError:
            lowered = text.lower()
            return "contradict" in lowered and "not contradict" not in lowered
        return bool(result.get("contradicts")) and float(result.get("confidence", 0.5)) >= min_confidence

    return check
