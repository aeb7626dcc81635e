"""
Rate limiting with a Redis sliding window and in-memory fallback.
"""

from .config import DEFAULT_RULES, RateLimitRule, RateLimitRuleType, load_rules
from .middleware import DEFAULT_PATH_RULES, RateLimitMiddleware
from .service import RateLimiter, RateLimitResult

_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the process-wide rate limiter (memory-only until wired to Redis)."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    global _rate_limiter
    _rate_limiter = limiter


__all__ = [
    "DEFAULT_PATH_RULES",
    "DEFAULT_RULES",
    "RateLimitRule",
    "RateLimitRuleType",
    "RateLimiter",
    "RateLimitResult",
    "RateLimitMiddleware",
    "get_rate_limiter",
    "load_rules",
    "set_rate_limiter",
]
