"""
API Gateway service for the SuperApp.

Wires the distributed rate limiter in front of every gateway route.
"""

import time
from typing import Any, Callable, Dict, Optional

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerManager
from service_gateway.app.ratelimit import (
    RateLimiterConfig,
    RateLimitMiddleware,
    RedisWindowStore,
    SlidingWindowRateLimiter,
    WindowCounterStore,
    build_breaker,
)


class GatewayService(BaseService):
    """API Gateway service implementation.

    ``store`` and ``clock`` may be injected (tests, embedded use); otherwise a
    Redis store is built from configuration and wall-clock time is used.
    """

    def __init__(self,
                 store: Optional[WindowCounterStore] = None,
                 clock: Callable[[], float] = time.time,
                 **config_overrides):
        self._injected_store = store
        self._clock = clock
        super().__init__("gateway", 8000, **config_overrides)

        @self.app.on_event("startup")
        async def _startup():
            self.rate_limiter.start()

        # uvicorn turns SIGTERM/SIGINT into the shutdown event
        @self.app.on_event("shutdown")
        async def _shutdown():
            self.logger.info("Gateway shutting down")
            await self.rate_limiter.close()

        self._setup_gateway_routes()

        self.app.state.gateway_service = self

    def _build_components(self):
        # Raises ConfigurationError on bad settings so the gateway never starts unlimited
        self.rate_limit_config = RateLimiterConfig.from_settings(self.config)
        store = self._injected_store or RedisWindowStore(self.rate_limit_config.store)

        self.circuit_breakers = CircuitBreakerManager()
        breaker = self.circuit_breakers.register(build_breaker(self.rate_limit_config))

        self.rate_limiter = SlidingWindowRateLimiter(
            self.rate_limit_config,
            store,
            breaker=breaker,
            clock=self._clock,
            metrics=self.metrics,
        )
        self.logger.info(
            "Rate limiter configured",
            standard=self.rate_limit_config.limits.standard,
            premium=self.rate_limit_config.limits.premium,
            window_ms=self.rate_limit_config.window_ms,
            fallback_strategy=self.rate_limit_config.fallback_strategy.value,
            store_endpoints=self.rate_limit_config.store.endpoints,
        )

    def _setup_middleware(self):
        # Added first so request timing and CORS wrap it
        self.app.add_middleware(
            RateLimitMiddleware,
            limiter=self.rate_limiter,
            fallback_strategy=self.rate_limit_config.fallback_strategy,
            trust_forwarded_headers=self.rate_limit_config.trust_forwarded_headers,
            exempt_paths=self.rate_limit_config.exempt_paths,
        )
        super()._setup_middleware()

    async def _check_dependencies(self) -> Dict[str, str]:
        healthy = await self.rate_limiter.health_check()
        return {
            "redis": "ok" if healthy else "error",
            "circuit_breaker": "ok" if not self.rate_limiter.breaker.is_open() else "open",
        }

    def _setup_gateway_routes(self):
        """Set up gateway routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "gateway",
                "message": "SuperApp - API Gateway",
                "version": "1.0.0"
            }

        @self.app.get("/api/v1/status")
        async def api_status() -> Dict[str, Any]:
            """API status endpoint."""
            return {
                "status": "operational",
                "version": "1.0.0",
                "circuit_breakers": self.circuit_breakers.get_all_states(),
            }

        @self.app.get("/api/v1/ratelimit/status")
        async def rate_limit_status() -> Dict[str, Any]:
            """Rate limiter configuration and degradation state."""
            return self.rate_limiter.status()


def create_app(**kwargs):
    """Create FastAPI application."""
    service = GatewayService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
