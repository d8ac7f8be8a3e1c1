"""
Structured logging for the policy engine.

Every entry carries the service name, the active trace/span ids and the
evaluation correlation fields (subject id, policy id) bound
through ``bind_evaluation_context``.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

from shared.tracing import current_span_ids

subject_id_var: ContextVar[Optional[str]] = ContextVar("subject_id", default=None)
policy_id_var: ContextVar[Optional[str]] = ContextVar("policy_id", default=None)

_CORRELATION_VARS = {
    "subject_id": subject_id_var,
    "policy_id": policy_id_var,
}

_service_name = "policy"


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structlog on top of the standard library logger.

    ``json_logs=False`` renders human readable lines for local runs.
    """
    global _service_name
    _service_name = service_name

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_trace_context,
            add_correlation_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the service name and the engine component ("policy.engine" -> "engine")."""
    event_dict.setdefault("service", _service_name)
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict.setdefault("component", logger_name.split(".", 1)[1])
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace and span ids of the active span."""
    trace_id, span_id = current_span_ids()
    if trace_id:
        event_dict["trace_id"] = trace_id
    if span_id:
        event_dict["span_id"] = span_id
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add bound correlation fields; explicit log fields win."""
    for key, var in _CORRELATION_VARS.items():
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


@contextmanager
def bind_evaluation_context(**fields: Optional[str]):
    """Bind correlation fields for the duration of a block.

        with bind_evaluation_context(subject_id="user-1", policy_id="gdpr"):
            ...
    """
    tokens = []
    for key, value in fields.items():
        var = _CORRELATION_VARS.get(key)
        if var is None:
            raise ValueError(f"Unknown correlation field: {key}")
        if value is not None:
            tokens.append((var, var.set(str(value))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
