"""Retry combinator with capped exponential backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from agent_coord.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Bounds for one retried operation.

    ``attempts`` caps the number of tries; ``timeout_seconds`` (when set) caps the
    wall-clock time spent retrying. Whichever runs out first ends the loop.
    """

    attempts: int | None = 5
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 2.0
    timeout_seconds: float | None = None

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (0-based)."""

        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(attempt, 0)))


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    is_conflict: Callable[[Exception], bool],
    policy: BackoffPolicy,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it stops raising conflicts.

    Exceptions for which ``is_conflict`` is false propagate immediately. When the
    policy is exhausted, ``RetryExhaustedError`` is raised from the last conflict.
    """

    started = time.monotonic()
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as error:
            if not is_conflict(error):
                raise
            attempt += 1
            if policy.attempts is not None and attempt >= policy.attempts:
                raise RetryExhaustedError(attempt) from error
            delay = policy.delay_for(attempt - 1)
            if policy.timeout_seconds is not None:
                remaining = policy.timeout_seconds - (time.monotonic() - started)
                if remaining <= 0:
                    raise RetryExhaustedError(attempt) from error
                delay = min(delay, remaining)
            logger.debug(
                "%s conflicted (attempt %d), retrying in %.3fs",
                description,
                attempt,
                delay,
            )
            sleep(delay)
