"""Tests for the certificate issuance rate limiter."""

from __future__ import annotations

import asyncio

import pytest

from tenantgate.security.ratelimit import (
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    SlidingWindowCounter,
)


class ManualClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSlidingWindowCounter:
    """Tests for SlidingWindowCounter."""

    def test_basic_allow(self):
        counter = SlidingWindowCounter(limit=10, window_seconds=60.0, now=0.0)
        allowed, remaining, reset_after = counter.allow(0.0)
        assert allowed is True
        assert remaining == 9
        assert reset_after == 60.0

    def test_exceeds_limit(self):
        """Events past the limit are denied within the same window."""
        counter = SlidingWindowCounter(limit=3, window_seconds=10.0, now=0.0)

        for _ in range(3):
            allowed, _, _ = counter.allow(1.0)
            assert allowed is True

        allowed, remaining, reset_after = counter.allow(2.0)
        assert allowed is False
        assert remaining == 0
        assert reset_after == 8.0

    def test_previous_window_is_weighted(self):
        counter = SlidingWindowCounter(limit=3, window_seconds=10.0, now=0.0)
        for _ in range(3):
            counter.allow(0.0)

        # Right after rotation the full previous count still applies.
        assert counter.allow(10.0)[0] is False
        # Half way through, half of it does.
        allowed, remaining, _ = counter.allow(15.0)
        assert allowed is True
        assert remaining == 0

    def test_idle_windows_reset_the_count(self):
        counter = SlidingWindowCounter(limit=3, window_seconds=10.0, now=0.0)
        for _ in range(3):
            counter.allow(0.0)

        allowed, remaining, _ = counter.allow(25.0)

        assert allowed is True
        assert remaining == 2

    def test_peek_does_not_count(self):
        counter = SlidingWindowCounter(limit=2, window_seconds=10.0, now=0.0)
        counter.allow(0.0)

        assert counter.peek(1.0) == (1, 9.0)
        assert counter.peek(1.0) == (1, 9.0)


class TestRateLimiter:
    """Tests for the per-domain limiter."""

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        limiter = RateLimiter(RateLimitConfig(limit=1, window_seconds=60.0), clock=ManualClock())

        first = await limiter.allow("a.example.com")
        second = await limiter.allow("a.example.com")
        other = await limiter.allow("b.example.com")

        assert isinstance(first, RateLimitResult)
        assert first.allowed is True
        assert second.allowed is False
        assert second.limit == 1
        assert other.allowed is True

    @pytest.mark.asyncio
    async def test_window_expiry_allows_again(self):
        clock = ManualClock()
        limiter = RateLimiter(RateLimitConfig(limit=1, window_seconds=60.0), clock=clock)
        await limiter.allow("a.example.com")

        clock.now = 30.0
        denied = await limiter.allow("a.example.com")
        clock.now = 150.0
        allowed = await limiter.allow("a.example.com")

        assert denied.allowed is False
        assert denied.reset_after == 30.0
        assert allowed.allowed is True

    @pytest.mark.asyncio
    async def test_check_does_not_count(self):
        limiter = RateLimiter(RateLimitConfig(limit=3, window_seconds=60.0), clock=ManualClock())

        untouched = await limiter.check("a.example.com")
        await limiter.allow("a.example.com")
        checked = await limiter.check("a.example.com")
        checked_again = await limiter.check("a.example.com")

        assert untouched.remaining == 3
        assert checked.remaining == 2
        assert checked_again.remaining == 2
        assert checked.allowed is True

    @pytest.mark.asyncio
    async def test_lru_eviction_bounds_memory(self):
        limiter = RateLimiter(
            RateLimitConfig(limit=1, window_seconds=60.0, max_entries=2), clock=ManualClock()
        )

        for key in ("a.example.com", "b.example.com", "c.example.com"):
            await limiter.allow(key)

        assert limiter.entry_count == 2
        assert (await limiter.allow("a.example.com")).allowed is True

    @pytest.mark.asyncio
    async def test_reset(self):
        limiter = RateLimiter(RateLimitConfig(limit=1, window_seconds=60.0), clock=ManualClock())
        await limiter.allow("a.example.com")
        await limiter.allow("b.example.com")

        await limiter.reset("a.example.com")
        assert (await limiter.allow("a.example.com")).allowed is True
        assert (await limiter.allow("b.example.com")).allowed is False

        await limiter.reset()
        assert limiter.entry_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_calls_respect_limit(self):
        limiter = RateLimiter(RateLimitConfig(limit=5, window_seconds=60.0), clock=ManualClock())

        results = await asyncio.gather(*(limiter.allow("a.example.com") for _ in range(20)))

        assert sum(r.allowed for r in results) == 5
