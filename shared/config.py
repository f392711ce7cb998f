"""
Shared configuration management for the SuperApp API Gateway.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Shared counter store (comma separated host:port list, more than one => cluster)
    redis_endpoints: str = Field(default="localhost:6379")
    redis_password: Optional[str] = Field(default=None)
    redis_db: int = Field(default=0)
    redis_socket_timeout_ms: int = Field(default=2000)
    redis_key_prefix: str = Field(default="ratelimit")

    # Rate limiting (requests per window, per tier)
    rate_limit_standard: int = Field(default=1000)
    rate_limit_premium: int = Field(default=2000)
    rate_limit_window_ms: int = Field(default=60000)
    rate_limit_fallback_strategy: str = Field(default="STRICT")
    rate_limit_local_max_entries: int = Field(default=10000)
    rate_limit_trust_forwarded_headers: bool = Field(default=False)
    rate_limit_exempt_paths: str = Field(default="/health,/metrics")

    # Circuit breaker around the counter store
    breaker_timeout_ms: int = Field(default=5000)
    breaker_reset_timeout_ms: int = Field(default=30000)
    breaker_error_threshold: int = Field(default=5)
    breaker_volume_threshold: int = Field(default=10)
    breaker_rolling_window_ms: int = Field(default=10000)

    # Background tasks
    health_check_interval_s: float = Field(default=30.0)
    degraded_log_interval_s: float = Field(default=30.0)

    @property
    def redis_endpoint_list(self) -> List[str]:
        """Configured store endpoints as a list."""
        return [item.strip() for item in self.redis_endpoints.split(",") if item.strip()]

    @property
    def exempt_path_list(self) -> List[str]:
        return [item.strip() for item in self.rate_limit_exempt_paths.split(",") if item.strip()]


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
