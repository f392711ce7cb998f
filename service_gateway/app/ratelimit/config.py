"""
Validated configuration for the rate limiter.

Every numeric option must be positive; a bad value raises
``ConfigurationError`` so the gateway refuses to start instead of running
without limits.
"""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from shared.config import BaseConfig
from shared.errors import ConfigurationError
from .models import FallbackStrategy, Tier


class TierLimits(BaseModel):
    """Requests allowed per window, per tier."""
    standard: int = Field(gt=0)
    premium: int = Field(gt=0)


class CircuitBreakerSettings(BaseModel):
    timeout_ms: int = Field(default=5000, gt=0)
    reset_timeout_ms: int = Field(default=30000, gt=0)
    error_threshold: int = Field(default=5, gt=0)
    volume_threshold: int = Field(default=10, gt=0)
    rolling_window_ms: int = Field(default=10000, gt=0)
    buckets: int = Field(default=10, gt=0)


class StoreSettings(BaseModel):
    """Connection details for the shared counter store."""
    endpoints: List[str] = Field(default_factory=lambda: ["localhost:6379"], min_length=1)
    password: Optional[str] = None
    db: int = Field(default=0, ge=0)
    key_prefix: str = Field(default="ratelimit", min_length=1)
    connection_options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("endpoints")
    @classmethod
    def _check_endpoints(cls, value: List[str]) -> List[str]:
        for endpoint in value:
            host, sep, port = endpoint.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"endpoint must be host:port, got {endpoint!r}")
        return value

    def host_ports(self) -> List[Tuple[str, int]]:
        pairs = []
        for endpoint in self.endpoints:
            host, _, port = endpoint.rpartition(":")
            pairs.append((host, int(port)))
        return pairs


class RateLimiterConfig(BaseModel):
    """Complete rate limiter configuration."""
    limits: TierLimits
    window_ms: int = Field(gt=0)
    fallback_strategy: FallbackStrategy = FallbackStrategy.STRICT
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    health_check_interval_s: float = Field(default=30.0, gt=0)
    degraded_log_interval_s: float = Field(default=30.0, gt=0)
    local_max_entries: int = Field(default=10000, gt=0)
    trust_forwarded_headers: bool = False
    exempt_paths: List[str] = Field(default_factory=lambda: ["/health", "/metrics"])

    @field_validator("fallback_strategy", mode="before")
    @classmethod
    def _normalize_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    def limit_for(self, tier: Tier) -> int:
        if tier is Tier.PREMIUM:
            return self.limits.premium
        return self.limits.standard

    @classmethod
    def build(cls, **values: Any) -> "RateLimiterConfig":
        """Validate ``values``, translating validation failures into ConfigurationError."""
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid rate limiter configuration",
                details={"errors": [
                    {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                    for err in exc.errors()
                ]},
            ) from exc

    @classmethod
    def from_settings(cls, settings: BaseConfig) -> "RateLimiterConfig":
        """Build from environment-backed service settings."""
        return cls.build(
            limits={
                "standard": settings.rate_limit_standard,
                "premium": settings.rate_limit_premium,
            },
            window_ms=settings.rate_limit_window_ms,
            fallback_strategy=settings.rate_limit_fallback_strategy,
            circuit_breaker={
                "timeout_ms": settings.breaker_timeout_ms,
                "reset_timeout_ms": settings.breaker_reset_timeout_ms,
                "error_threshold": settings.breaker_error_threshold,
                "volume_threshold": settings.breaker_volume_threshold,
                "rolling_window_ms": settings.breaker_rolling_window_ms,
            },
            store={
                "endpoints": settings.redis_endpoint_list,
                "password": settings.redis_password,
                "db": settings.redis_db,
                "key_prefix": settings.redis_key_prefix,
                "connection_options": {
                    "socket_timeout": settings.redis_socket_timeout_ms / 1000,
                    "socket_connect_timeout": settings.redis_socket_timeout_ms / 1000,
                },
            },
            health_check_interval_s=settings.health_check_interval_s,
            degraded_log_interval_s=settings.degraded_log_interval_s,
            local_max_entries=settings.rate_limit_local_max_entries,
            trust_forwarded_headers=settings.rate_limit_trust_forwarded_headers,
            exempt_paths=settings.exempt_path_list,
        )
