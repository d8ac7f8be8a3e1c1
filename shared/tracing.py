"""
OpenTelemetry tracing for the policy engine.

``configure_tracing`` installs the global provider; the engine opens one span
per ``evaluate``/``evaluate_all`` call through ``trace_operation``.
"""

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional, Tuple

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Status, StatusCode

TRACER_NAME = "policy.engine"


def _parse_headers(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``k1=v1,k2=v2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""
    headers: Dict[str, str] = {}
    for segment in (raw or "").split(","):
        key, sep, value = segment.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def otlp_exporter_options(endpoint: str) -> Dict[str, Any]:
    """Keyword arguments for the gRPC OTLP span exporter."""
    options: Dict[str, Any] = {"endpoint": endpoint, "insecure": endpoint.startswith("http://")}
    headers = _parse_headers(os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    if headers:
        options["headers"] = headers
    return options


def configure_tracing(service_name: str, otel_exporter: Optional[str] = None, enable_console: bool = False) -> None:
    """Install a tracer provider exporting to OTLP and/or the console."""
    provider = TracerProvider(resource=Resource.create({
        "service.name": service_name,
        "service.instance.id": os.getenv("HOSTNAME", "unknown"),
        "deployment.environment": os.getenv("POLICY_ENV", "local"),
    }))

    if otel_exporter:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**otlp_exporter_options(otel_exporter))))
    if enable_console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)


@contextmanager
def trace_operation(operation_name: str, **attributes):
    """Run a block inside a span; exceptions mark the span as failed."""
    with trace.get_tracer(TRACER_NAME).start_as_current_span(operation_name, attributes=attributes) as span:
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise


def add_span_attributes(**attributes):
    """Add attributes to the current span when it is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attributes(attributes)


def current_span_ids() -> Tuple[Optional[str], Optional[str]]:
    """Hex (trace_id, span_id) of the recording span, ``(None, None)`` otherwise."""
    span = trace.get_current_span()
    if not span.is_recording():
        return None, None
    span_context = span.get_span_context()
    trace_id = f"{span_context.trace_id:032x}" if span_context.trace_id else None
    span_id = f"{span_context.span_id:016x}" if span_context.span_id else None
    return trace_id, span_id


def current_trace_id() -> Optional[str]:
    return current_span_ids()[0]
