"""Sliding window rate limiting for certificate issuance.

Certificate authorities cap how often one name may be issued. The local
authority mirrors that with a per-domain sliding window so the renewal
sweep and retries see the same CertificateAuthorityRateLimited behaviour a
public authority produces.

Example:
    limiter = RateLimiter(RateLimitConfig(limit=5, window_seconds=3600))

    result = await limiter.allow("shop.example.com")
    if not result.allowed:
        retry_in = result.reset_after
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from time import monotonic


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    limit: int = 5
    window_seconds: float = 3600.0
    max_entries: int = 10000


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    reset_after: float
    limit: int


class SlidingWindowCounter:
    """Sliding window counter approximated from the current and previous window.

    The previous window's count is weighted by how much of it still
    overlaps the sliding window.
    """

    __slots__ = (
        "_current_count",
        "_previous_count",
        "_window_start",
        "_window_seconds",
        "_limit",
    )

    def __init__(self, limit: int, window_seconds: float, now: float) -> None:
        self._limit = limit
        self._window_seconds = window_seconds
        self._current_count = 0
        self._previous_count = 0
        self._window_start = now

    def _maybe_rotate(self, now: float) -> None:
        elapsed = now - self._window_start
        if elapsed >= self._window_seconds:
            windows_passed = int(elapsed / self._window_seconds)
            self._previous_count = self._current_count if windows_passed == 1 else 0
            self._current_count = 0
            self._window_start = now - (elapsed % self._window_seconds)

    def _weighted(self, now: float) -> tuple[float, float]:
        self._maybe_rotate(now)
        elapsed = now - self._window_start
        weight = elapsed / self._window_seconds
        return self._previous_count * (1 - weight) + self._current_count, elapsed

    def allow(self, now: float) -> tuple[bool, int, float]:
        """Check and count one event.

        Returns:
            Tuple of (allowed, remaining, reset_after_seconds)
        """
        weighted, elapsed = self._weighted(now)
        remaining = max(0, int(self._limit - weighted))
        reset_after = self._window_seconds - elapsed

        if weighted >= self._limit:
            return False, remaining, reset_after

        self._current_count += 1
        return True, remaining - 1, reset_after

    def peek(self, now: float) -> tuple[int, float]:
        """Remaining events without counting one."""
        weighted, elapsed = self._weighted(now)
        return max(0, int(self._limit - weighted)), self._window_seconds - elapsed


@dataclass
class RateLimiter:
    """Per-key rate limiter with LRU eviction for bounded memory."""

    config: RateLimitConfig = field(default_factory=RateLimitConfig)
    clock: Callable[[], float] = monotonic
    _counters: OrderedDict[str, SlidingWindowCounter] = field(
        default_factory=OrderedDict, init=False
    )
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def _get_counter(self, key: str, now: float) -> SlidingWindowCounter:
        if key in self._counters:
            self._counters.move_to_end(key)
            return self._counters[key]

        counter = SlidingWindowCounter(self.config.limit, self.config.window_seconds, now)
        self._counters[key] = counter
        while len(self._counters) > self.config.max_entries:
            self._counters.popitem(last=False)
        return counter

    async def allow(self, key: str) -> RateLimitResult:
        """Count one event for ``key`` if it is within the limit."""
        async with self._lock:
            now = self.clock()
            allowed, remaining, reset_after = self._get_counter(key, now).allow(now)
            return RateLimitResult(
                allowed=allowed,
                remaining=remaining,
                reset_after=reset_after,
                limit=self.config.limit,
            )

    async def check(self, key: str) -> RateLimitResult:
        """Check the limit without counting an event."""
        async with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                return RateLimitResult(
                    allowed=True,
                    remaining=self.config.limit,
                    reset_after=self.config.window_seconds,
                    limit=self.config.limit,
                )
            remaining, reset_after = counter.peek(self.clock())
            return RateLimitResult(
                allowed=remaining > 0,
                remaining=remaining,
                reset_after=reset_after,
                limit=self.config.limit,
            )

    async def reset(self, key: str | None = None) -> None:
        async with self._lock:
            if key is None:
                self._counters.clear()
            else:
                self._counters.pop(key, None)

    @property
    def entry_count(self) -> int:
        """Number of tracked keys."""
        return len(self._counters)
