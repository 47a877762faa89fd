"""
Retry helpers.

Two kinds of retry live here: the backoff curve applied to failed jobs,
and the short retry loop around store writes that hit a transient
database error.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(
    attempt: int,
    base_ms: int = 1000,
    factor: float = 2.0,
    max_ms: int = 3_600_000,
) -> float:
    """
    Delay before a failed job becomes due again.

    Args:
        attempt: Number of failed executions so far (1 after the first failure).
        base_ms: Delay after the first failure.
        factor: Growth factor per further failure.
        max_ms: Upper bound of the delay.

    Returns:
        Delay in seconds.
    """
    exponent = max(attempt - 1, 0)
    delay_ms = min(base_ms * (factor**exponent), max_ms)
    return delay_ms / 1000.0


def is_transient_error(exc: BaseException) -> bool:
    """Check whether an error is worth retrying against the store."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (TimeoutError, ConnectionError))


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.1,
) -> T:
    """
    Run a store operation, retrying it on transient errors.

    Each retry opens a fresh transaction through ``operation``. Errors that
    are not transient, or the last transient one, propagate.

    Args:
        operation: Zero-argument coroutine factory.
        attempts: Total number of tries.
        base_delay: Sleep before the first retry in seconds, doubled each time.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= attempts or not is_transient_error(e):
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"Transient store error, retrying in {delay:.2f}s: {e}",
                extra={"attempt": attempt},
            )
            await asyncio.sleep(delay)
            attempt += 1
