"""Learning approval workflow and its intake."""

from handoff.learning.feedback import (
    CorrectionInput,
    FeedbackInput,
    FeedbackIntake,
    FeedbackResult,
    FeedbackType,
)
from handoff.learning.pipeline import (
    ApplyFailure,
    ApplyOutcome,
    BatchResult,
    LearningPipeline,
    PipelineConfig,
    ReviewDecision,
)

__all__ = [
    "CorrectionInput",
    "FeedbackInput",
    "FeedbackIntake",
    "FeedbackResult",
    "FeedbackType",
    "ApplyFailure",
    "ApplyOutcome",
    "BatchResult",
    "LearningPipeline",
    "PipelineConfig",
    "ReviewDecision",
]
