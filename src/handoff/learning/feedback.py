"""Feedback intake - turns customer feedback and owner corrections into learning items."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from handoff.errors import ValidationError
from handoff.learning.pipeline import LearningPipeline
from handoff.models import (
    LearningProposal,
    Priority,
    SourceType,
    parse_enum,
    validate_shop_id,
)


logger = logging.getLogger(__name__)

MAX_FEEDBACK_REASON = 1000
MIN_CORRECTION_LENGTH = 10
MAX_CORRECTION_LENGTH = 10000
MAX_CORRECTION_CONTEXT = 5000

FEEDBACK_CONFIDENCE = 50.0
CORRECTION_CONFIDENCE = 90.0


class FeedbackType(str, Enum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"
    STAR_RATING = "star_rating"
    EMOJI = "emoji"


@dataclass
class FeedbackInput:
    """End-user reaction to an assistant reply."""
    conversation_id: str
    shop_id: int
    feedback_type: FeedbackType | str
    rating: int | None = None
    reason: str | None = None
    emoji: str | None = None

    @property
    def is_negative(self) -> bool:
        if self.feedback_type == FeedbackType.THUMBS_DOWN:
            return True
        return self.rating is not None and self.rating <= 2


@dataclass
class CorrectionInput:
    """Shop owner replacing an assistant answer with the right one."""
    conversation_id: str
    shop_id: int
    original_response: str
    corrected_answer: str
    priority: Priority | str = Priority.NORMAL
    correction_context: str | None = None
    category: str = "general"


@dataclass
class FeedbackResult:
    feedback_id: str
    learning_item_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"feedback_id": self.feedback_id, "learning_item_id": self.learning_item_id}


def _require_text(value: Any, name: str, min_length: int, max_length: int) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    text = value.strip()
    if len(text) < min_length:
        raise ValidationError(f"{name} must be at least {min_length} characters")
    if len(text) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters")
    return text


class FeedbackIntake:
    """Validates feedback and files learning items for the ones worth reviewing."""

    def __init__(self, pipeline: LearningPipeline):
        self._pipeline = pipeline

    async def submit_feedback(self, feedback: FeedbackInput) -> FeedbackResult:
        """Record feedback; negative feedback with a reason becomes a learning item."""
        shop_id = validate_shop_id(feedback.shop_id)
        feedback.feedback_type = parse_enum(FeedbackType, feedback.feedback_type, "feedback_type")
        if not feedback.conversation_id:
            raise ValidationError("conversation_id is required")

        if feedback.rating is not None:
            if isinstance(feedback.rating, bool) or not isinstance(feedback.rating, int) \
                    or not 1 <= feedback.rating <= 5:
                raise ValidationError("rating must be an integer from 1 to 5")
        elif feedback.feedback_type == FeedbackType.STAR_RATING:
            raise ValidationError("star_rating feedback requires a rating")

        reason = (feedback.reason or "").strip()
        if len(reason) > MAX_FEEDBACK_REASON:
            raise ValidationError(f"reason must be at most {MAX_FEEDBACK_REASON} characters")

        result = FeedbackResult(feedback_id=str(uuid.uuid4()))
        if not (feedback.is_negative and reason):
            return result

        item = await self._pipeline.submit(LearningProposal(
            shop_id=shop_id,
            source_type=SourceType.FEEDBACK,
            source_id=result.feedback_id,
            proposed_content=reason,
            confidence_score=FEEDBACK_CONFIDENCE,
            priority=Priority.HIGH if feedback.rating == 1 else Priority.NORMAL,
            metadata={
                "conversation_id": feedback.conversation_id,
                "feedback_type": feedback.feedback_type.value,
                "rating": feedback.rating,
                "emoji": feedback.emoji,
            },
        ))
        result.learning_item_id = item.id
        return result

    async def submit_correction(self, correction: CorrectionInput) -> FeedbackResult:
        """Owner corrections always go to review."""
        shop_id = validate_shop_id(correction.shop_id)
        if not correction.conversation_id:
            raise ValidationError("conversation_id is required")
        original = _require_text(
            correction.original_response, "original_response",
            MIN_CORRECTION_LENGTH, MAX_CORRECTION_LENGTH,
        )
        corrected = _require_text(
            correction.corrected_answer, "corrected_answer",
            MIN_CORRECTION_LENGTH, MAX_CORRECTION_LENGTH,
        )
        context = (correction.correction_context or "").strip()
        if len(context) > MAX_CORRECTION_CONTEXT:
            raise ValidationError(f"correction_context must be at most {MAX_CORRECTION_CONTEXT} characters")

        result = FeedbackResult(feedback_id=str(uuid.uuid4()))
        item = await self._pipeline.submit(LearningProposal(
            shop_id=shop_id,
            source_type=SourceType.CORRECTION,
            source_id=result.feedback_id,
            proposed_content=corrected,
            confidence_score=CORRECTION_CONFIDENCE,
            priority=correction.priority,
            category=correction.category,
            metadata={
                "conversation_id": correction.conversation_id,
                "original_response": original[:1000],
                "correction_context": context or None,
            },
        ))
        result.learning_item_id = item.id
        return result
