"""
Integration tests for the rate limiting flow across gateway instances.
"""

import time

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from service_gateway.app.main import GatewayService
from shared.errors import StoreUnavailableError
from shared.test_helpers import FrozenClock, InMemoryWindowStore, create_mock_user


class SwitchableWindowStore(InMemoryWindowStore):
    """Shared store double that can be taken offline."""

    def __init__(self):
        super().__init__()
        self.available = True

    async def hit(self, *args, **kwargs):
        if not self.available:
            raise StoreUnavailableError("connection refused")
        return await super().hit(*args, **kwargs)

    async def ping(self) -> bool:
        if not self.available:
            raise StoreUnavailableError("connection refused")
        return True


def make_gateway(store, clock, **overrides):
    options = {
        "rate_limit_standard": 5,
        "rate_limit_premium": 10,
        "breaker_error_threshold": 2,
        "breaker_volume_threshold": 2,
        "breaker_reset_timeout_ms": 50,
    }
    options.update(overrides)
    service = GatewayService(store=store, clock=clock, **options)

    @service.app.middleware("http")
    async def test_auth(request: Request, call_next):
        user_id = request.headers.get("X-Test-User")
        if user_id:
            request.state.user_info = create_mock_user(user_id, request.headers.get("X-Test-Tier"))
        return await call_next(request)

    return service


class TestRateLimitFlow:
    """End-to-end rate limiting through the gateway app."""

    @pytest.fixture
    def clock(self):
        return FrozenClock()

    @pytest.fixture
    def store(self):
        return SwitchableWindowStore()

    @pytest.fixture
    def gateways(self, store, clock):
        first = make_gateway(store, clock)
        second = make_gateway(store, clock)
        with TestClient(first.app) as a, TestClient(second.app) as b:
            yield a, b

    def test_limit_is_shared_between_instances(self, gateways):
        a, b = gateways
        patient = {"X-Test-User": "patient-1"}

        for i in range(5):
            client = a if i % 2 == 0 else b
            assert client.get("/", headers=patient).status_code == 200

        assert a.get("/", headers=patient).status_code == 429
        assert b.get("/", headers=patient).status_code == 429

    def test_tiers_have_separate_budgets(self, gateways):
        a, _ = gateways
        patient = {"X-Test-User": "patient-1", "X-Test-Tier": "standard"}
        provider = {"X-Test-User": "provider-1", "X-Test-Tier": "premium"}

        for _ in range(5):
            a.get("/", headers=patient)

        assert a.get("/", headers=patient).status_code == 429
        response = a.get("/", headers=provider)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "10"

    def test_window_slides_forward(self, gateways, clock):
        a, _ = gateways

        for _ in range(5):
            a.get("/")
        assert a.get("/").status_code == 429

        clock.advance(120)
        response = a.get("/")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_outage_falls_back_per_instance_then_recovers(self, gateways, store):
        a, b = gateways
        store.available = False

        a_statuses = [a.get("/").status_code for _ in range(6)]
        b_statuses = [b.get("/").status_code for _ in range(6)]

        # Each instance enforces the same per-tier total on its own
        assert a_statuses == [200] * 5 + [429]
        assert b_statuses == [200] * 5 + [429]
        assert a.get("/api/v1/ratelimit/status", headers={"X-Test-User": "ops"}).json()[
            "circuit_breaker"]["state"] == "open"

        store.available = True
        time.sleep(0.06)
        response = a.get("/", headers={"X-Test-User": "patient-2"})

        assert response.status_code == 200
        status = a.get("/api/v1/ratelimit/status", headers={"X-Test-User": "ops"}).json()
        assert status["circuit_breaker"]["state"] == "closed"

    def test_health_reflects_store_outage(self, gateways, store):
        a, _ = gateways

        assert a.get("/health").json()["status"] == "ok"

        store.available = False
        data = a.get("/health").json()

        assert data["status"] == "degraded"
        assert data["dependencies"]["redis"] == "error"


class TestPermissiveGateway:
    """Gateway configured to let traffic through when the limiter itself faults."""

    def test_limiter_fault_passes_request_through(self):
        store = InMemoryWindowStore()

        async def broken_hit(*args, **kwargs):
            raise RuntimeError("unexpected")

        store.hit = broken_hit
        service = make_gateway(store, FrozenClock(), rate_limit_fallback_strategy="PERMISSIVE")

        with TestClient(service.app) as client:
            response = client.get("/")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_strict_gateway_rejects_on_limiter_fault(self):
        store = InMemoryWindowStore()

        async def broken_hit(*args, **kwargs):
            raise RuntimeError("unexpected")

        store.hit = broken_hit
        service = make_gateway(store, FrozenClock())

        with TestClient(service.app) as client:
            response = client.get("/")

        assert response.status_code == 503
        assert response.json() == {"error": "Rate limiting service unavailable"}
