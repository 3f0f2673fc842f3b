"""Exponential backoff for outbound calls and outbox redelivery.

Two shapes of retry share one delay formula:

* :func:`async_retry_with_backoff` retries an awaitable in-process
  (provider status lookups during redirect callbacks).
* :func:`next_attempt_at` schedules a durable retry for outbox rows; the
  worker picks the row up again once that instant has passed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt.")
    base_delay: float = Field(default=1.0, gt=0.0, description="Base delay in seconds.")
    max_delay: float = Field(default=300.0, gt=0.0, description="Upper bound on delay in seconds.")
    jitter: bool = Field(default=True, description="Randomise the delay within [0.5x, 1.5x].")


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay in seconds for zero-based *attempt*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def next_attempt_at(attempts: int, now: datetime, config: RetryConfig) -> datetime:
    """When an outbox row that has failed *attempts* times should be retried."""
    return now + timedelta(seconds=compute_delay(max(attempts - 1, 0), config))


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
) -> T:
    """Await ``fn()`` until it succeeds or retries are exhausted.

    Parameters
    ----------
    fn:
        Zero-argument callable returning an awaitable.  It is invoked
        afresh on every attempt.
    config:
        Retry parameters.
    retryable_exceptions:
        Only these exception types trigger a retry; anything else
        propagates immediately.

    Raises
    ------
    Exception
        The last retryable exception once all attempts have failed.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = compute_delay(attempt, config)
            logger.warning("Retry %d/%d after %.1fs: %s", attempt + 1, config.max_retries, delay, exc)
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
