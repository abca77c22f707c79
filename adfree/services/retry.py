"""
Bounded retry with exponential backoff for outbound calls.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from structlog import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before retry number `attempt` (0-based): base, 2*base, 4*base, ..."""
    return base_delay * (2**attempt)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    retry_on: tuple[type[BaseException], ...],
    operation_name: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run operation, retrying on the given exception types.

    The last exception is re-raised once all attempts are used.
    """
    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts - 1:
                logger.warning(
                    "retry_attempts_exhausted",
                    operation=operation_name,
                    attempts=attempts,
                    error=str(exc),
                )
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.info(
                "retrying_after_transient_error",
                operation=operation_name,
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(exc),
            )
            await sleep(delay)
    raise RuntimeError("retry_with_backoff requires attempts >= 1")
