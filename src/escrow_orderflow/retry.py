"""Bounded exponential backoff for transient infrastructure errors."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import redis.exceptions
import sqlalchemy.exc

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_BASE_DELAY = 0.5
DEFAULT_RETRY_MAX_DELAY = 30.0

# Connectivity failures on the bus and the store. Anything else is a bug or
# bad input and must not be retried blindly.
TRANSIENT_BUS_ERRORS: tuple[type[Exception], ...] = (
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    redis.exceptions.BusyLoadingError,
)
TRANSIENT_DB_ERRORS: tuple[type[Exception], ...] = (
    sqlalchemy.exc.OperationalError,
    sqlalchemy.exc.InterfaceError,
    sqlalchemy.exc.DisconnectionError,
    ConnectionError,
    TimeoutError,
)
TRANSIENT_ERRORS = TRANSIENT_BUS_ERRORS + TRANSIENT_DB_ERRORS


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.last_exception = last_exception


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based), doubling each time."""
    return min(max_delay, base_delay * (2**attempt))


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY,
    retry_on: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
) -> T:
    """Await ``func()`` retrying on ``retry_on`` with exponential backoff.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        operation: Short label used in logs and in the RetryError message.
        max_retries: Retries after the first attempt.
        base_delay: Base delay in seconds (doubles with each retry).
        max_delay: Upper bound for a single delay.
        retry_on: Exception types considered transient.

    Returns:
        Whatever ``func`` returns on the first successful attempt.

    Raises:
        RetryError: If every attempt failed with a transient error.
    """
    last_exception: Exception | None = None

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except retry_on as e:
            last_exception = e
            if attempt == max_retries:
                break

            delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
            logger.warning(
                "%s: attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                operation,
                attempt + 1,
                max_retries + 1,
                str(e),
                delay,
            )
            await asyncio.sleep(delay)

    logger.error("%s: all %d attempts failed", operation, max_retries + 1)
    raise RetryError(
        f"All {max_retries + 1} attempts failed for {operation}",
        last_exception=last_exception,
    )
