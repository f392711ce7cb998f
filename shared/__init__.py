"""
Shared utilities for the SuperApp API Gateway.

This package aggregates common building blocks consumed by the gateway:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and client correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton (health, metrics, request timing)

Do not import from service_* packages into shared/, except from test_helpers.
"""
