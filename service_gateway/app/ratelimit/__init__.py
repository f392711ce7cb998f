"""
Rate limiting package for the Gateway.

Holds the distributed sliding-window limiter, its Redis-backed counter store,
the in-process fallback counter used during store outages and the HTTP
middleware that applies per-client, per-tier request budgets.
"""

from .config import CircuitBreakerSettings, RateLimiterConfig, StoreSettings, TierLimits
from .limiter import SlidingWindowRateLimiter, build_breaker, weighted_count
from .local import LocalFallbackCounter
from .middleware import RateLimitMiddleware, get_client_identity
from .models import ClientIdentity, FallbackStrategy, RateLimitResult, Tier, WindowHit
from .store import RedisWindowStore, WindowCounterStore, bucket_key

__all__ = [
    "CircuitBreakerSettings",
    "ClientIdentity",
    "FallbackStrategy",
    "LocalFallbackCounter",
    "RateLimitMiddleware",
    "RateLimitResult",
    "RateLimiterConfig",
    "RedisWindowStore",
    "SlidingWindowRateLimiter",
    "StoreSettings",
    "Tier",
    "TierLimits",
    "WindowCounterStore",
    "WindowHit",
    "bucket_key",
    "build_breaker",
    "get_client_identity",
    "weighted_count",
]
