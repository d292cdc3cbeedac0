import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from app.logging_config import get_logger

logger = get_logger("retry")

T = TypeVar("T")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 2,
    initial_delay: float = 0.5,
    max_delay: float = 4.0,
    multiplier: float = 2.0,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call fn, retrying retryable failures with exponential backoff.

    Non-retryable errors are raised immediately; after max_retries the last
    error is raised.
    """
    delay = initial_delay
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if is_retryable is not None and not is_retryable(e):
                raise
            if attempt >= max_retries:
                raise
            attempt += 1
            logger.info(
                f"Attempt {attempt} failed, retrying in {delay:.2f}s",
                extra={"context": {"error": str(e)[:200]}},
            )
            await sleep(delay)
            delay = min(delay * multiplier, max_delay)
