"""Retry Executor - bounded exponential backoff around fallible operations.

The delay math is a pure function so it can be tested without a limiter;
`with_retry` reports every outcome to the Rate Governor when one is given.
"""
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from services.errors import RateLimited
from services.rate_governor import RateGovernor

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    rand: float = 1.0,
) -> float:
    """Seconds to wait before retrying after `attempt` (0-based).

    `rand` in [0, 1) scales the capped delay into [50%, 100%].
    """
    capped = min(base_delay * (2 ** attempt), max_delay)
    return capped * (0.5 + rand * 0.5)


async def with_retry(
    op: Callable[[], Awaitable[T]],
    *,
    governor: Optional[RateGovernor] = None,
    source_key: Optional[str] = None,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run `op` with up to `max_retries` retries.

    Each attempt first acquires a token from the governor (when `source_key`
    is set). After the last failed attempt the error is re-raised; callers
    treat that as a failed operation, not a failed run.
    """
    rng = rng or random.Random()
    track = governor is not None and source_key is not None
    last_error: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        if track:
            await governor.acquire(source_key)
        try:
            result = await op()
        except retry_on as e:
            last_error = e
            if attempt >= max_retries:
                break
            if track:
                governor.on_failure(source_key)
            delay = backoff_delay(attempt, base_delay, max_delay, rng.random())
            if isinstance(e, RateLimited) and e.retry_after:
                delay = min(max(delay, e.retry_after), max_delay)
            logger.warning(
                f"Attempt {attempt + 1}/{max_retries + 1} failed for {source_key or 'operation'}: {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await sleep(delay)
            continue

        if track:
            governor.on_success(source_key)
        return result

    logger.error(f"Giving up on {source_key or 'operation'} after {max_retries + 1} attempts: {last_error}")
    raise last_error
