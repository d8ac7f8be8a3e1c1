"""
Shared utilities for the policy engine.

This package holds the cross-cutting building blocks used by the engine:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- circuit_breaker: Protection for collaborator calls

Do not import from service_policy into shared/.
"""
