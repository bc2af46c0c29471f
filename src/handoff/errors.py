"""Error taxonomy for the ingestion and curation pipeline."""

from __future__ import annotations


class HandoffError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(HandoffError, ValueError):
    """Bad input shape or range. Rejected synchronously, never retried."""


class TransientProviderError(HandoffError):
    """Embedding/LLM provider timed out or dropped the connection.

    Retried with backoff by the caller's retry policy, then deferred.
    """


class EmbeddingError(HandoffError):
    """Non-transient provider failure (bad dimension, unknown model, ...)."""


class ConflictError(HandoffError):
    """Attempted a state transition from an invalid state."""

    def __init__(
        self,
        item_id: str,
        action: str,
        current: str,
        expected: str,
    ):
        self.item_id = item_id
        self.action = action
        self.current = current
        self.expected = expected
        super().__init__(
            f"cannot {action} item {item_id}: status is '{current}', expected '{expected}'"
        )


class NotFoundError(HandoffError):
    """Referenced record does not exist."""


class PersistenceError(HandoffError):
    """Database failure. The enclosing transaction has been rolled back."""
