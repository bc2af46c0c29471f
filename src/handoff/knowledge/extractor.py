"""LLM-driven insight extractor.

Reads stored conversations and proposes reusable business facts as
learning items. Nothing it proposes reaches the knowledge base
without review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

from handoff.errors import HandoffError
from handoff.llm import extract_json
from handoff.models import ConversationRecord, LearningProposal, Priority, SourceType

if TYPE_CHECKING:
    from handoff.learning.pipeline import LearningPipeline


logger = logging.getLogger(__name__)


EXTRACTION_PROMPT = """You review conversations between a shop's customers and its assistant.
Extract ONLY objective, reusable facts about the business that would help answer
future customers: prices, opening hours, services offered, policies, locations.

Do NOT extract:
- Anything about the individual customer (name, phone, preferences, bookings)
- Opinions, questions, or small talk
- Facts the assistant merely guessed at

Conversation:
{conversation}

Respond in JSON format:
```json
{{
  "insights": [
    {{"content": "Haircuts cost $30 on weekdays", "category": "pricing", "confidence": 0.9}}
  ]
}}
```
Return {{"insights": []}} when there is nothing worth keeping."""


@dataclass
class ExtractorConfig:
    """Configuration for KnowledgeExtractor."""
    enabled: bool = True
    min_confidence: float = 0.7
    max_insights_per_conversation: int = 5
    min_content_length: int = 10
    max_conversation_chars: int = 6000


@dataclass
class Insight:
    content: str
    category: str = "general"
    confidence: float = 0.0


class KnowledgeExtractor:
    """Extracts insights from conversations with an LLM."""

    def __init__(self, llm: Any = None, config: ExtractorConfig | None = None):
        self._llm = llm
        self.config = config or ExtractorConfig()

    def is_available(self) -> bool:
        return self.config.enabled and self._llm is not None

    async def extract(self, record: ConversationRecord) -> list[Insight]:
        """Insights at or above the confidence floor. Never raises on bad LLM output."""
        if not self.is_available():
            return []
        text = (record.transcript or record.summary or "").strip()
        if len(text) < self.config.min_content_length:
            return []

        prompt = EXTRACTION_PROMPT.format(conversation=text[:self.config.max_conversation_chars])
        reply = await self._llm.generate(prompt)
        try:
            data = extract_json(reply)
        except ValueError:
            logger.debug("[Extractor] Unparseable reply for %s", record.id)
            return []
        if not isinstance(data, dict):
            return []

        insights = []
        for raw in data.get("insights", [])[:self.config.max_insights_per_conversation]:
            if not isinstance(raw, dict):
                continue
            content = str(raw.get("content", "")).strip()
            try:
                confidence = float(raw.get("confidence", 0))
            except (TypeError, ValueError):
                continue
            if len(content) < self.config.min_content_length:
                continue
            if confidence < self.config.min_confidence:
                continue
            insights.append(Insight(
                content=content,
                category=str(raw.get("category") or "general").strip().lower() or "general",
                confidence=min(confidence, 1.0),
            ))
        return insights

    async def extract_and_queue(self, record: ConversationRecord, pipeline: LearningPipeline) -> int:
        """Queue each insight as a pending learning item. Returns how many were queued."""
        if record.shop_id is None:
            return 0
        try:
            insights = await self.extract(record)
        except Exception as e:
            logger.warning("[Extractor] Extraction failed for %s: %s", record.id, e)
            return 0

        queued = 0
        for insight in insights:
            try:
                await pipeline.submit(LearningProposal(
                    shop_id=record.shop_id,
                    source_type=SourceType.CONVERSATION,
                    source_id=record.id,
                    proposed_content=insight.content,
                    confidence_score=round(insight.confidence * 100, 1),
                    priority=Priority.NORMAL,
                    category=insight.category,
                    metadata={"channel": record.channel.value, "user_id": record.user_id},
                ))
                queued += 1
            except HandoffError as e:
                logger.warning("[Extractor] Could not queue insight from %s: %s", record.id, e)
        if queued:
            logger.info("[Extractor] Queued %d insight(s) from conversation %s", queued, record.id)
        return queued
