"""
Bounded exponential-backoff retry for outbound venue calls.

Only VenueTransient (5xx, 429, timeout, network) is retried. Anything else
(AuthError, VenueRejected, programming errors) propagates on the first
attempt. When the budget is spent the last transient error is surfaced as
ExecutionFailed so callers never see a raw network exception.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from signal_bridge.exceptions import ExecutionFailed, VenueTransient

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before retry number `attempt` (0-based): base, 2*base, 4*base, ..."""
    return base_delay * (2 ** attempt)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    base_delay: float,
    description: str = "venue request",
) -> T:
    """
    Run `operation` with up to `max_retries` retries after the first attempt.

    Args:
        operation: Zero-arg coroutine factory; called again on each attempt so
            signatures/nonces are rebuilt fresh.
        max_retries: Retries after the initial attempt (3 -> 4 attempts total)
        base_delay: First backoff delay in seconds; doubles every retry
        description: Used in log lines and the final error message

    Raises:
        ExecutionFailed: transient failure persisted past the retry budget
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except VenueTransient as e:
            if attempt >= max_retries:
                logger.error(
                    f"{description} failed after {attempt + 1} attempts: {e.message}"
                )
                raise ExecutionFailed(
                    f"{description} failed after {attempt + 1} attempts: {e.message}",
                    venue_code=e.venue_code,
                    venue_payload=e.venue_payload,
                ) from e
            delay = backoff_delay(attempt, base_delay)
            logger.info(
                f"Retrying {description} in {delay:.2f}s "
                f"(attempt {attempt + 1}/{max_retries}): {e.message}"
            )
            await asyncio.sleep(delay)
            attempt += 1
