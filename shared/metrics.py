"""
Prometheus metrics for the policy engine.

Each collector owns a private ``CollectorRegistry`` so several evaluators
(and tests) can live in one process without duplicate registration errors.
"""

import threading
from typing import Any, Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram, Info

ENGINE_VERSION = "1.0.0"

# Sub-millisecond resolution around the 5 ms budget
EVALUATION_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25)

# name -> (type, help, labels)
METRIC_DEFINITIONS: Dict[str, Tuple[type, str, Tuple[str, ...]]] = {
    "policy_evaluations_total": (Counter, "Single policy evaluations", ("kind", "decision")),
    "policy_evaluation_duration_seconds": (Histogram, "Evaluation duration in seconds", ("operation",)),
    "policy_batch_evaluations_total": (Counter, "Batch evaluations", ("decision",)),
    "evaluation_timeouts_total": (Counter, "Evaluations that missed their deadline", ("operation",)),
    "latency_budget_exceeded_total": (Counter, "Evaluations slower than the latency budget", ("operation",)),
    "rate_limit_checks_total": (Counter, "Rate limit checks forwarded to the store", ("result",)),
    "audit_events_total": (Counter, "Compliance audit events emitted", ("status",)),
    "errors_total": (Counter, "Errors by type", ("error_type", "service")),
}


def _decision_label(allowed: bool) -> str:
    return "allow" if allowed else "deny"


class MetricsCollector:
    """Engine metrics bound to one registry."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._lock = threading.Lock()
        self._metrics: Dict[str, Any] = {}

        info = Info("service_info", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": ENGINE_VERSION})
        self._metrics["service_info"] = info

        for name, (metric_type, documentation, labels) in METRIC_DEFINITIONS.items():
            kwargs = {"buckets": EVALUATION_BUCKETS} if metric_type is Histogram else {}
            self._metrics[name] = metric_type(name, documentation, labels, registry=self.registry, **kwargs)

    def get_metric(self, name: str):
        return self._metrics.get(name)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read a sample back from this collector's registry."""
        return self.registry.get_sample_value(name, labels or {})

    def record_evaluation(self, kind: str, allowed: bool, duration: float):
        self.increment_counter("policy_evaluations_total", kind=kind, decision=_decision_label(allowed))
        self._metrics["policy_evaluation_duration_seconds"].labels(operation="evaluate").observe(duration)

    def record_batch(self, allowed: bool, duration: float):
        self.increment_counter("policy_batch_evaluations_total", decision=_decision_label(allowed))
        self._metrics["policy_evaluation_duration_seconds"].labels(operation="evaluate_all").observe(duration)

    def record_error(self, error_type: str, service: Optional[str] = None):
        self.increment_counter("errors_total", error_type=error_type, service=service or self.service_name)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter; unknown names are ignored."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            metric.labels(**labels).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
