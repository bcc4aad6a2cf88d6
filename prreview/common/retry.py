import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from prreview.common.errors import is_rate_limited, is_retryable, retry_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    label: str = "operation",
) -> T:
    """Run ``operation`` and retry it with exponential backoff.

    Errors for which ``should_retry`` returns False propagate immediately.
    The last error is raised once ``attempts`` calls have failed.
    """
    check = should_retry or (lambda exc: is_rate_limited(exc) or is_retryable(exc))
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            attempt += 1
            if attempt >= attempts or not check(exc):
                raise
            delay = retry_delay(attempt - 1, base_delay, max_delay)
            logger.info(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt, attempts, exc, delay
            )
            await asyncio.sleep(delay)
