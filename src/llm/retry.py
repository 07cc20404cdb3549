# src/llm/retry.py — v2
"""Bounded exponential-backoff retry built on the error classifier.

Every failure is classified; the error that finally escapes is the
classified ForgeError itself, never a generic wrapper around it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from dreamforge.core.errors import ForgeError
from dreamforge.llm.classifier import to_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY_S = 1.0

RetryObserver = Callable[[int, ForgeError], Any]


def compute_delay(base_delay_s: float, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2x base, 4x base..."""
    return base_delay_s * (2 ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    on_retry: RetryObserver | None = None,
    base_delay_s: float = DEFAULT_BASE_DELAY_S,
    context: str = "generation",
) -> T:
    """Await ``operation`` until it succeeds or retrying is pointless.

    ``operation`` runs at most ``max_retries + 1`` times, and exactly once
    when the failure is ContentFiltered.

    Args:
        operation: Zero-argument coroutine factory.
        max_retries: Retries after the first attempt.
        on_retry: Observer called as ``on_retry(attempt, error)`` before
            each backoff sleep; ``attempt`` is 1-based.
        base_delay_s: First backoff delay.
        context: Stage label used when classifying.

    Raises:
        ForgeError: The classified final failure, chained to the original.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            error = to_error(exc, context)
            attempt += 1

            if not error.retryable or attempt > max_retries:
                if error is exc:
                    raise
                raise error from exc

            delay = compute_delay(base_delay_s, attempt)
            logger.warning(
                "%s - %s (attempt %d/%d), retrying in %.1fs",
                context, error.kind.value, attempt, max_retries, delay,
            )
            if on_retry is not None:
                on_retry(attempt, error)
            await asyncio.sleep(delay)
