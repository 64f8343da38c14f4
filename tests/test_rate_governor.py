"""
Rate Governor tests.

Tests verify:
- Burst capacity is half a minute's budget and the next acquire waits for a refill
- Tokens stay within [0, max_tokens]
- Backoff multiplier stays within [1, 10] and scales waits
- Snapshot reflects bucket state
"""

import asyncio
import random

import pytest

from services.rate_governor import MAX_BACKOFF, MIN_BACKOFF, RateGovernor, create_rate_governor


class TestTokenBucket:
    """Acquire/refill behaviour with a manual clock."""

    def test_burst_then_wait(self, clock, governor):
        """20 rpm gives 10 immediate acquires; the 11th waits ~3s."""
        governor.configure("reddit", 20)

        async def go():
            for _ in range(10):
                await governor.acquire("reddit")
            assert clock.sleeps == []
            await governor.acquire("reddit")

        asyncio.run(go())
        assert len(clock.sleeps) == 1
        assert clock.sleeps[0] == pytest.approx(3.0)
        assert governor.state("reddit").tokens == pytest.approx(0.0, abs=1e-9)

    def test_explicit_capacity_then_one_second_wait(self, clock, governor):
        """60 rpm with 10 tokens: 10 immediate acquires, the 11th waits ~1s."""
        governor.configure("x", 60, max_tokens=10)

        async def go():
            for _ in range(10):
                await governor.acquire("x")
            assert clock.sleeps == []
            await governor.acquire("x")

        asyncio.run(go())
        assert clock.sleeps == [pytest.approx(1.0)]

    def test_tokens_never_exceed_capacity(self, clock, governor):
        state = governor.configure("playstore", 12)
        clock.advance(3600)
        governor.snapshot("playstore")
        assert state.tokens == state.max_tokens == 6

    def test_tokens_never_negative(self, clock, governor):
        governor.configure("appstore", 2)

        async def go():
            for _ in range(5):
                await governor.acquire("appstore")

        asyncio.run(go())
        assert governor.state("appstore").tokens >= 0

    def test_unknown_source_uses_default_budget(self, governor):
        state = governor.state("somewhere")
        assert state.refill_rate == pytest.approx(5 / 60)
        assert state.max_tokens == 3

    def test_non_positive_rate_rejected(self, governor):
        with pytest.raises(ValueError):
            governor.configure("reddit", 0)

    def test_jitter_applied_after_acquire(self, clock):
        governor = RateGovernor(clock=clock, sleep=clock.sleep, jitter_range=(0.5, 2.0), rng=random.Random(7))
        governor.configure("reddit", 60)
        asyncio.run(governor.acquire("reddit"))
        assert len(clock.sleeps) == 1
        assert 0.5 <= clock.sleeps[0] <= 2.0


class TestBackoff:
    """Failure/success feedback."""

    def test_failure_doubles_and_caps(self, governor):
        governor.configure("reddit", 25)
        for _ in range(10):
            governor.on_failure("reddit")
        state = governor.state("reddit")
        assert state.backoff_multiplier == MAX_BACKOFF
        assert state.tokens == 0

    def test_success_decays_to_floor(self, governor):
        governor.configure("reddit", 25)
        governor.on_failure("reddit")
        governor.on_failure("reddit")
        assert governor.state("reddit").backoff_multiplier == 4
        for _ in range(50):
            governor.on_success("reddit")
        assert governor.state("reddit").backoff_multiplier == MIN_BACKOFF

    def test_backoff_scales_wait(self, clock, governor):
        """After a failure the bucket is empty and the wait is doubled."""
        governor.configure("reddit", 60)
        governor.on_failure("reddit")
        asyncio.run(governor.acquire("reddit"))
        assert clock.sleeps[0] == pytest.approx(2.0)


class TestSnapshot:

    def test_snapshot_unknown_source(self, governor):
        assert governor.snapshot("nope") is None

    def test_snapshot_reports_floor_of_tokens(self, clock, governor):
        governor.configure("reddit", 20)
        asyncio.run(governor.acquire("reddit"))
        snap = governor.snapshot("reddit")
        assert snap == {"tokens_available": 9, "backoff": 1.0}

    def test_create_from_settings(self, test_settings):
        governor = create_rate_governor(test_settings)
        for source in ("reddit", "archive", "playstore", "appstore"):
            assert governor.snapshot(source) is not None
        assert governor.state("reddit").refill_rate == pytest.approx(test_settings.reddit_rpm / 60)
