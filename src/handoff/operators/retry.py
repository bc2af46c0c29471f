"""Retry policy for provider calls.

Wraps tenacity so the attempt budget and backoff live in one injectable
object. Tests pass a recording ``sleep`` in place of the real clock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from handoff.errors import TransientProviderError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    wait = state.next_action.sleep if state.next_action else 0
    logger.warning(
        "[Retry] Attempt %d failed (%s), retrying in %.1fs",
        state.attempt_number, exc, wait,
    )


@dataclass
class RetryPolicy:
    """Exponential backoff on TransientProviderError.

    Delays are ``initial_backoff * 2 ** (attempt - 1)`` capped at
    ``max_backoff``: 1s, 2s, 4s with the defaults.
    """
    max_attempts: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 8.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` under this policy; the final error is re-raised as-is."""
        async for attempt in self.retrying():
            with attempt:
                return await fn(*args, **kwargs)
        raise AssertionError("unreachable")  # AsyncRetrying always returns or raises
