"""
Retry with exponential backoff and jitter for definition fetches.

Stats posts do not go through here: the batcher's single requeue is their
only retry.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from togglebox.errors import RateLimitError, ToggleBoxError

T = TypeVar("T")

logger = logging.getLogger("togglebox.transport")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 2
    """Attempts after the first one. 0 disables retrying."""

    base_delay_ms: int = 100
    """Delay before the first retry, doubled for each further one."""

    max_delay_ms: int = 5000
    """Upper bound for any single delay, including a server's Retry-After."""

    jitter_factor: float = 0.1
    """Fraction of the delay randomized in both directions."""


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass
class RetryResult(Generic[T]):
    """Outcome of ``fetch_with_retry``."""

    success: bool
    data: Optional[T] = None
    error: Optional[Exception] = None
    attempts: int = 1


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    error: Optional[Exception] = None,
) -> float:
    """
    Seconds to wait before retry number ``attempt + 1``.

    A rate-limit error carrying ``retry_after`` raises the floor to the
    server's hint; the result never exceeds ``max_delay_ms``.
    """
    delay_ms = min(config.base_delay_ms * (2**attempt), config.max_delay_ms)
    delay_ms += delay_ms * config.jitter_factor * (random.random() * 2 - 1)

    if isinstance(error, RateLimitError) and error.retry_after:
        delay_ms = max(delay_ms, min(error.retry_after * 1000, config.max_delay_ms))

    return max(0.0, delay_ms) / 1000.0


def is_retryable_error(error: Exception) -> bool:
    """Only errors classified as transient by the transport are retried."""
    return isinstance(error, ToggleBoxError) and error.retryable


async def fetch_with_retry(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> RetryResult[T]:
    """Run ``fn`` until it succeeds, fails permanently, or retries run out."""
    cfg = config or DEFAULT_RETRY_CONFIG
    attempts = cfg.max_retries + 1

    for attempt in range(attempts):
        try:
            return RetryResult(success=True, data=await fn(), attempts=attempt + 1)
        except Exception as error:
            if not is_retryable_error(error) or attempt == attempts - 1:
                return RetryResult(success=False, error=error, attempts=attempt + 1)

            delay = calculate_backoff(attempt, cfg, error)
            logger.debug(f"Attempt {attempt + 1}/{attempts} failed ({error}), retrying in {delay:.3f}s")
            await asyncio.sleep(delay)

    return RetryResult(success=False, error=ToggleBoxError("No attempts were made"), attempts=0)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> T:
    """
    ``fetch_with_retry`` that returns the value or raises the last error.

    Raises:
        Exception: The last error once retries are exhausted
    """
    result = await fetch_with_retry(fn, config)
    if not result.success:
        raise result.error  # type: ignore[misc]
    return result.data  # type: ignore[return-value]
