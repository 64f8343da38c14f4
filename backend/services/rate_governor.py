"""Rate Governor - per-source token bucket with adaptive backoff

Every outbound network or browser operation acquires a token first. Failures
double the backoff multiplier (capped at 10x) and drain the bucket; successes
decay it geometrically back toward 1x. A random jitter follows every acquire
so traffic never settles into a periodic signature.

State lives for the process lifetime and is never persisted.
"""
import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

MIN_BACKOFF = 1.0
MAX_BACKOFF = 10.0
DEFAULT_JITTER = (0.5, 2.0)  # seconds


@dataclass
class RateLimiterState:
    """Token bucket for one source key."""
    tokens: float
    max_tokens: float
    refill_rate: float  # tokens per second
    last_refill_at: float
    backoff_multiplier: float = MIN_BACKOFF


class RateGovernor:
    """Token buckets keyed by source identifier.

    Clock, sleep and jitter are injectable so the bucket math can be exercised
    without real waiting.
    """

    def __init__(
        self,
        default_rpm: float = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter_range: Tuple[float, float] = DEFAULT_JITTER,
        rng: Optional[random.Random] = None,
    ):
        self.default_rpm = default_rpm
        self._clock = clock
        self._sleep = sleep
        self._jitter_range = jitter_range
        self._rng = rng or random.Random()
        self._limiters: Dict[str, RateLimiterState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def configure(
        self,
        source: str,
        requests_per_minute: float,
        max_tokens: Optional[float] = None,
    ) -> RateLimiterState:
        """Create (or reset) the bucket for a source.

        Burst capacity defaults to half a minute's budget.
        """
        if requests_per_minute <= 0:
            raise ValueError(f"requests_per_minute must be positive, got {requests_per_minute}")
        capacity = max_tokens if max_tokens is not None else max(1.0, math.ceil(requests_per_minute / 2))
        state = RateLimiterState(
            tokens=float(capacity),
            max_tokens=float(capacity),
            refill_rate=requests_per_minute / 60.0,
            last_refill_at=self._clock(),
        )
        self._limiters[source] = state
        return state

    def _get_or_create(self, source: str) -> RateLimiterState:
        state = self._limiters.get(source)
        if state is None:
            state = self.configure(source, self.default_rpm)
        return state

    def _refill(self, state: RateLimiterState) -> None:
        now = self._clock()
        elapsed = max(0.0, now - state.last_refill_at)
        state.tokens = min(state.max_tokens, state.tokens + elapsed * state.refill_rate)
        state.last_refill_at = now

    async def acquire(self, source: str) -> None:
        """Wait until a token is available for `source`, consume it, then jitter."""
        state = self._get_or_create(source)
        lock = self._locks.setdefault(source, asyncio.Lock())

        async with lock:
            self._refill(state)
            if state.tokens < 1:
                wait = (1 - state.tokens) / state.refill_rate * state.backoff_multiplier
                logger.debug(f"Rate limiting {source}: waiting {wait * 1000:.0f}ms")
                await self._sleep(wait)
                self._refill(state)
            state.tokens = max(0.0, state.tokens - 1)

            low, high = self._jitter_range
            if high > 0:
                await self._sleep(self._rng.uniform(low, high))

    def on_success(self, source: str) -> None:
        state = self._get_or_create(source)
        state.backoff_multiplier = max(MIN_BACKOFF, state.backoff_multiplier * 0.9)

    def on_failure(self, source: str) -> None:
        state = self._get_or_create(source)
        state.backoff_multiplier = min(MAX_BACKOFF, state.backoff_multiplier * 2)
        state.tokens = 0.0
        logger.warning(f"Rate limit backoff for {source}: {state.backoff_multiplier:.1f}x")

    def snapshot(self, source: str) -> Optional[Dict[str, float]]:
        """Current bucket state for monitoring, or None for an unknown source."""
        state = self._limiters.get(source)
        if state is None:
            return None
        self._refill(state)
        return {
            "tokens_available": math.floor(state.tokens),
            "backoff": state.backoff_multiplier,
        }

    def state(self, source: str) -> RateLimiterState:
        return self._get_or_create(source)


def create_rate_governor(settings) -> RateGovernor:
    """Governor pre-configured with the per-source budgets from settings."""
    governor = RateGovernor()
    for source in ("reddit", "archive", "playstore", "appstore"):
        governor.configure(source, settings.rate_budget(source))
    return governor
