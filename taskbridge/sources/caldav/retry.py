"""Exponential backoff for transient CalDAV failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from taskbridge.sources.caldav.errors import CalDAVRateLimitError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int, exc: BaseException) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if isinstance(exc, CalDAVRateLimitError) and exc.retry_after is not None:
            return min(exc.retry_after, self.max_delay)
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    label: str = "CalDAV request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation``, retrying transient failures with exponential backoff.

    Authentication errors and 412 conflicts are raised immediately.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_retries:
                raise
            attempt += 1
            delay = policy.delay_for(attempt, exc)
            logger.warning(
                "%s failed (%s). Backing off for %.1fs before retry %s/%s",
                label,
                exc,
                delay,
                attempt,
                policy.max_retries,
            )
            await sleep(delay)
