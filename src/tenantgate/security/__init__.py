"""Security helpers."""

from .ratelimit import RateLimitConfig, RateLimiter, RateLimitResult

__all__ = ["RateLimitConfig", "RateLimitResult", "RateLimiter"]
