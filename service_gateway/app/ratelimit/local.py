"""
In-process fallback counter used while the shared store is unavailable.

Limits enforced here are per gateway instance rather than global. The same
per-tier ``total`` applies, so an outage never raises a client's effective
limit on any single instance.
"""

import math
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from shared.logging import get_logger
from .models import RateLimitResult


@dataclass
class LocalWindow:
    """Fixed window state for one client."""
    count: int
    window_start: float


class LocalFallbackCounter:
    """Fixed-window counter keyed by client id.

    When full, expired windows are dropped before the least recently used live
    window is evicted.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(self, window_ms: int, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.window_ms = window_ms
        self._max_entries = max_entries
        self._windows: "OrderedDict[str, LocalWindow]" = OrderedDict()
        self._lock = threading.Lock()
        self.logger = get_logger("gateway.ratelimit.local")

    def __len__(self) -> int:
        return len(self._windows)

    def _reset_at(self, window: LocalWindow) -> int:
        return math.ceil((window.window_start + self.window_ms) / 1000)

    def check(self, client_id: str, limit: int, now_ms: float) -> RateLimitResult:
        """Count one request for ``client_id`` against ``limit``."""
        with self._lock:
            window = self._windows.get(client_id)
            if window is None:
                window = LocalWindow(count=0, window_start=now_ms)
                self._windows[client_id] = window
                self._evict(now_ms)
            else:
                self._windows.move_to_end(client_id)

            if now_ms - window.window_start >= self.window_ms:
                window.count = 0
                window.window_start = now_ms

            if window.count >= limit:
                return RateLimitResult(
                    limited=True,
                    remaining=0,
                    reset=self._reset_at(window),
                    total=limit,
                    source="local",
                )

            window.count += 1
            return RateLimitResult(
                limited=False,
                remaining=limit - window.count,
                reset=self._reset_at(window),
                total=limit,
                source="local",
            )

    def _evict(self, now_ms: float) -> None:
        # Caller holds the lock
        if len(self._windows) <= self._max_entries:
            return
        self._drop_expired(now_ms)

        # Evicting a live window hands that client a fresh budget
        evicted = 0
        while len(self._windows) > self._max_entries:
            self._windows.popitem(last=False)
            evicted += 1
        if evicted:
            self.logger.warning(
                "Local fallback counter full, evicted live windows",
                evicted=evicted,
                max_entries=self._max_entries,
            )

    def _drop_expired(self, now_ms: float) -> int:
        expired = [
            key for key, window in self._windows.items()
            if now_ms - window.window_start >= self.window_ms
        ]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def cleanup(self, now_ms: float) -> int:
        """Drop windows that have fully expired; returns how many were removed."""
        with self._lock:
            return self._drop_expired(now_ms)

    def get(self, client_id: str) -> Optional[LocalWindow]:
        with self._lock:
            return self._windows.get(client_id)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
