"""
Shared configuration management for the policy engine.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="POLICY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Log level")
    json_logs: bool = Field(default=True, description="JSON log lines, console rendering when false")

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: Optional[str] = Field(default=None, description="OTLP collector endpoint")
    enable_console_tracing: bool = Field(default=False)


class PolicyEngineConfig(BaseConfig):
    """Policy engine configuration."""

    service_name: str = "policy"

    # Evaluation
    evaluation_timeout_ms: Optional[float] = Field(default=100.0, description="Default per-call deadline, None disables")
    latency_budget_ms: float = Field(default=5.0, description="Single evaluation latency budget")

    # Rate limit store
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the rate limit store")
    rate_limit_key_prefix: str = Field(default="policy_rate_limit")
    rate_limit_timeout_ms: float = Field(default=20.0, gt=0)
    rate_limit_fail_open: bool = Field(default=True, description="Allow when the store is unavailable")
    circuit_breaker_failure_threshold: int = Field(default=5, gt=0)
    circuit_breaker_recovery_timeout: float = Field(default=30.0, gt=0)

    # Audit
    audit_enabled: bool = Field(default=True)


def get_config(**overrides) -> PolicyEngineConfig:
    """Get policy engine configuration, environment first then overrides."""
    return PolicyEngineConfig(**overrides)
