"""Per-user, per-channel rate limiting backed by Redis."""

from .exceptions import RateLimiterError, RateLimitExceededError
from .limiter import DEFAULT_RATE_LIMITS, RateLimiter, RateLimitRule

__all__ = [
    "RateLimiter",
    "RateLimitRule",
    "DEFAULT_RATE_LIMITS",
    "RateLimiterError",
    "RateLimitExceededError",
]
