"""Retry logic with exponential backoff for chain adapter calls."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from x402_settlement_service.core.errors import AdapterUnavailable

logger = logging.getLogger(__name__)

# Retryable exceptions
RETRYABLE_EXCEPTIONS = (AdapterUnavailable,)

T = TypeVar("T")


def calculate_backoff(
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> float:
    """Calculate exponential backoff delay with optional jitter.

    Args:
        attempt: The current attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Whether to add random jitter

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (2**attempt), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random())
    return delay


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    jitter: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``func`` until it succeeds or ``max_attempts`` is exhausted.

    Only ``RETRYABLE_EXCEPTIONS`` are retried; anything else propagates
    immediately. After the last attempt the last retryable error is raised.

    Args:
        func: Zero-argument coroutine factory
        max_attempts: Total number of attempts (including the first)
        base_delay: Base delay between attempts in seconds
        max_delay: Maximum delay between attempts in seconds
        jitter: Whether to add random jitter to the delay
        sleep: Sleep coroutine, injectable for tests

    Returns:
        Result of the first successful call
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_exception: Optional[Exception] = None

    for attempt in range(max_attempts):
        try:
            return await func()
        except RETRYABLE_EXCEPTIONS as e:
            last_exception = e
            if attempt < max_attempts - 1:
                delay = calculate_backoff(attempt, base_delay, max_delay, jitter)
                logger.warning(
                    f"Attempt {attempt + 1}/{max_attempts} failed ({e.message}); retrying in {delay:.2f}s"
                )
                await sleep(delay)

    if last_exception is not None:
        raise last_exception
    raise RuntimeError("Unexpected state in retry logic")
