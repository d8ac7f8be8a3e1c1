"""
Evaluator wiring from configuration.
"""

from typing import Optional

from shared.config import PolicyEngineConfig, get_config
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector
from shared.tracing import configure_tracing

from .collaborators.audit_sink import AuditSink
from .collaborators.rate_limit_store import RateLimitStore, RedisRateLimitStore
from .policy.engine import PolicyEvaluator


def create_evaluator(
    config: Optional[PolicyEngineConfig] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
    audit_sink: Optional[AuditSink] = None,
) -> PolicyEvaluator:
    """Build a ``PolicyEvaluator`` with logging, tracing and collaborators set up."""
    config = config or get_config()

    configure_logging(config.service_name, config.log_level, json_logs=config.json_logs)
    if config.enable_tracing:
        configure_tracing(
            config.service_name,
            otel_exporter=config.otel_exporter,
            enable_console=config.enable_console_tracing,
        )

    logger = get_logger("policy.factory")

    if rate_limit_store is None and config.redis_url:
        rate_limit_store = RedisRateLimitStore(config.redis_url, key_prefix=config.rate_limit_key_prefix)

    evaluator = PolicyEvaluator(
        rate_limit_store=rate_limit_store,
        audit_sink=audit_sink,
        config=config,
        metrics=get_metrics_collector(config.service_name),
    )

    logger.info(
        "Policy evaluator created",
        env=config.env,
        rate_limit_store=type(rate_limit_store).__name__ if rate_limit_store is not None else None,
        audit_enabled=config.audit_enabled,
        evaluation_timeout_ms=config.evaluation_timeout_ms,
    )
    return evaluator
