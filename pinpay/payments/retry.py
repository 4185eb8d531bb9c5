"""
Bounded retry with linear backoff
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bound and backoff step; waits base_delay * attempt between tries"""
    max_attempts: int = 3
    base_delay: float = 2.0


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    is_transient: Callable[[Exception], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation: str = "operation",
) -> T:
    """
    Call func until it succeeds, fails permanently or attempts run out

    Waits base_delay, 2 * base_delay, ... between attempts. Errors for which
    is_transient returns False are raised immediately; the last transient
    error is raised once max_attempts is reached.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except Exception as e:
            if not is_transient(e) or attempt >= max_attempts:
                raise
            delay = base_delay * attempt
            logger.warning(
                "transient_error_retrying",
                operation=operation,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                error=str(e),
            )
            await sleep(delay)

    raise ValueError("max_attempts must be at least 1")
