"""
Shared window counter store.

Buckets live in Redis under ``<prefix>:{<client>}:<bucket index>``. The braces
form a cluster hash tag so the current and previous bucket of one client always
map to the same slot and can be touched by a single script.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.exceptions import RedisError

from shared.errors import StoreUnavailableError
from shared.logging import get_logger
from .config import StoreSettings
from .models import WindowHit

# Reads both buckets, applies the weighted sliding window and increments the
# current bucket only when the request is admitted, in one atomic step.
# KEYS[1] current bucket, KEYS[2] previous bucket
# ARGV[1] limit, ARGV[2] previous-bucket weight, ARGV[3] ttl in ms
SLIDING_WINDOW_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1])) or 0
local previous = tonumber(redis.call('GET', KEYS[2])) or 0
local limit = tonumber(ARGV[1])
local weight = tonumber(ARGV[2])
local ttl_ms = tonumber(ARGV[3])

local weighted = math.floor(previous * weight + current)
if weighted >= limit then
    return {1, weighted}
end

redis.call('INCR', KEYS[1])
redis.call('PEXPIRE', KEYS[1], ttl_ms)
return {0, weighted}
"""


def bucket_key(prefix: str, client_id: str, bucket: int) -> str:
    """Store key for one client's bucket."""
    return f"{prefix}:{{{client_id}}}:{bucket}"


class WindowCounterStore(ABC):
    """Networked per-bucket counters shared by every gateway instance."""

    @abstractmethod
    async def hit(self, current_key: str, previous_key: str, limit: int,
                  weight: float, ttl_ms: int) -> WindowHit:
        """Evaluate the weighted window and, if admitted, count the request.

        Must be atomic with respect to concurrent callers on the same keys.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""


class RedisWindowStore(WindowCounterStore):
    """Redis (single node or cluster) implementation of the counter store."""

    def __init__(self, settings: StoreSettings, client: Optional[Any] = None):
        self.settings = settings
        self.logger = get_logger("gateway.ratelimit.store")
        self._redis = client
        self._script = None

    def _connect(self) -> Any:
        options = dict(self.settings.connection_options)
        nodes = self.settings.host_ports()
        if len(nodes) > 1:
            self.logger.info("Connecting to Redis cluster", nodes=len(nodes))
            return RedisCluster(
                startup_nodes=[ClusterNode(host, port) for host, port in nodes],
                password=self.settings.password,
                **options
            )
        host, port = nodes[0]
        self.logger.info("Connecting to Redis", host=host, port=port, db=self.settings.db)
        return redis.Redis(
            host=host,
            port=port,
            db=self.settings.db,
            password=self.settings.password,
            **options
        )

    def _get_redis(self) -> Any:
        """Get or create the Redis connection."""
        if self._redis is None:
            self._redis = self._connect()
        return self._redis

    def _get_script(self) -> Any:
        if self._script is None:
            self._script = self._get_redis().register_script(SLIDING_WINDOW_SCRIPT)
        return self._script

    async def hit(self, current_key: str, previous_key: str, limit: int,
                  weight: float, ttl_ms: int) -> WindowHit:
        script = self._get_script()
        try:
            limited, weighted = await script(
                keys=[current_key, previous_key],
                args=[limit, repr(float(weight)), ttl_ms],
            )
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(str(e), details={"key": current_key}) from e

        return WindowHit(limited=bool(int(limited)), weighted=int(weighted))

    async def ping(self) -> bool:
        try:
            return bool(await self._get_redis().ping())
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(str(e)) from e

    async def close(self) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
            self.logger.info("Redis connection closed")
        except (RedisError, OSError) as e:
            self.logger.warning("Error closing Redis connection", error=str(e))
        finally:
            self._redis = None
            self._script = None
