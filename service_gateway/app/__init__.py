"""
API Gateway Service package for the SuperApp.

The gateway fronts client requests and enforces per-client request budgets:
- Rate limiting: distributed sliding window over Redis, local fallback counter
- Circuit-breaking around the shared counter store

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.ratelimit: Sliding-window limiter, counter store and middleware.
"""
