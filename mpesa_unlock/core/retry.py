"""Bounded retry for outbound gateway calls."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from mpesa_unlock.core.logging import get_logger

T = TypeVar("T")

log = get_logger(__name__)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 2,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    backoff_seconds: float = 0.0,
    backoff_factor: float = 2.0,
    operation: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await fn() up to `attempts` times.
    Only exceptions in `retry_on` trigger another attempt; anything else propagates immediately.
    The last failure is re-raised unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    delay = backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt == attempts:
                log.warning("retry_exhausted", operation=operation, attempts=attempts, reason=str(e))
                raise
            log.info("retry_scheduled", operation=operation, attempt=attempt, delay=delay, reason=str(e))
            if delay > 0:
                await sleep(delay)
            delay *= backoff_factor
    raise AssertionError("unreachable")
