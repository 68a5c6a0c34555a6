"""
Shared utilities for the session auth engine.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Backoff calculation with jitter
- circuit_breaker: Per-key failure windows

Do not import from service packages into shared/.
"""
