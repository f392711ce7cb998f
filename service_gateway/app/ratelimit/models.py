"""
Rate limiting data models.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Tier(str, Enum):
    """Caller classification selecting which limit applies."""
    STANDARD = "standard"
    PREMIUM = "premium"

    @classmethod
    def parse(cls, value: Optional[Any]) -> "Tier":
        """Map an arbitrary tier value onto the enum; unknown values are STANDARD."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.STANDARD


class FallbackStrategy(str, Enum):
    """What the middleware does when the limiter itself faults."""
    STRICT = "STRICT"
    PERMISSIVE = "PERMISSIVE"


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single rate limit check."""
    limited: bool
    remaining: int
    reset: int
    total: int
    source: str = "store"

    def retry_after(self, now_seconds: float, window_ms: Optional[int] = None) -> int:
        """Seconds until the window resets, relative to ``now_seconds``.

        ``reset`` is rounded up while ``now_seconds`` is rounded down, so the raw
        difference can be one second longer than the window; passing
        ``window_ms`` caps it at the window length.
        """
        seconds = max(0, self.reset - math.floor(now_seconds))
        if window_ms is not None:
            seconds = min(seconds, math.ceil(window_ms / 1000))
        return seconds

    def as_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.total),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }


@dataclass(frozen=True)
class WindowHit:
    """What the counter store reports for one check-and-increment."""
    limited: bool
    weighted: int


@dataclass(frozen=True)
class ClientIdentity:
    """Who is being rate limited."""
    client_id: str
    tier: Tier = Tier.STANDARD
    authenticated: bool = False
