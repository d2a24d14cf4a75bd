"""
Bounded retry with exponential backoff for transient store failures.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from recall.errors import RetryableError

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = 0.05  # 0.05s, 0.1s, 0.2s between retries


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff: float = DEFAULT_BACKOFF,
    description: str = "operation",
) -> T:
    """
    Run an async operation, retrying RetryableError with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt)
        attempts: Maximum number of attempts (>= 1)
        backoff: Delay before the second attempt; doubled after each failure
        description: Label used in log messages

    Returns:
        The operation's result

    Raises:
        RetryableError: The last error once all attempts are exhausted
        Exception: Any non-retryable error, immediately
    """
    attempts = max(1, attempts)
    attempt = 0

    while True:
        try:
            return await operation()
        except RetryableError as exc:
            if attempt == attempts - 1:
                logger.error("{} failed after {} attempts: {}", description, attempts, exc)
                raise
            wait_time = backoff * (2**attempt)
            logger.warning(
                "{} failed on attempt {}/{}: {}. Retrying in {:.2f}s",
                description,
                attempt + 1,
                attempts,
                exc,
                wait_time,
            )
            await asyncio.sleep(wait_time)
            attempt += 1
