"""
HTTP adapter between Starlette requests and the sliding window rate limiter.
"""

from typing import Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shared.logging import get_logger, set_client_context
from .limiter import SlidingWindowRateLimiter
from .models import ClientIdentity, FallbackStrategy, Tier


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Extract the caller IP, honouring proxy headers only when trusted."""
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_client_identity(request: Request, trust_forwarded_headers: bool = False) -> ClientIdentity:
    """Resolve who the request is rate limited as.

    The auth layer stores the authenticated identity on
    ``request.state.user_info``; anonymous callers are keyed by address.
    """
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict):
        user_id = user_info.get("user_id")
        if user_id:
            tier = Tier.parse(user_info.get("tier", user_info.get("type")))
            return ClientIdentity(client_id=f"user:{user_id}", tier=tier, authenticated=True)

    client_ip = get_client_ip(request, trust_forwarded_headers)
    return ClientIdentity(client_id=f"ip:{client_ip}", tier=Tier.STANDARD)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Enforce per-client limits on every non-exempt request."""

    def __init__(
        self,
        app,
        limiter: SlidingWindowRateLimiter,
        fallback_strategy: FallbackStrategy = FallbackStrategy.STRICT,
        trust_forwarded_headers: bool = False,
        exempt_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.fallback_strategy = FallbackStrategy(fallback_strategy)
        self.trust_forwarded_headers = trust_forwarded_headers
        self.exempt_paths = frozenset(exempt_paths or ())
        self.logger = get_logger("gateway.rate_limit_middleware")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        try:
            identity = get_client_identity(request, self.trust_forwarded_headers)
            set_client_context(identity.client_id, identity.tier.value)
            result = await self.limiter.check_limit(identity.client_id, identity.tier)
        except Exception as e:
            self.logger.error(
                "Rate limiter error",
                error=str(e),
                path=request.url.path,
                method=request.method,
                fallback_strategy=self.fallback_strategy.value,
                exc_info=True,
            )
            if self.fallback_strategy is FallbackStrategy.PERMISSIVE:
                return await call_next(request)
            return JSONResponse(
                status_code=503,
                content={"error": "Rate limiting service unavailable"},
            )

        headers = result.as_headers()

        if result.limited:
            retry_after = result.retry_after(self.limiter.clock(), self.limiter.config.window_ms)
            self.logger.warning(
                "Rate limit exceeded",
                client_id=identity.client_id,
                tier=identity.tier.value,
                path=request.url.path,
                method=request.method,
                source=result.source,
            )
            headers["Retry-After"] = str(retry_after)
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests", "retryAfter": retry_after},
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
