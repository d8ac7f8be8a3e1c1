"""
Timing and telemetry around evaluations.
"""

import time
from contextlib import contextmanager
from typing import Optional

from shared.errors import EvaluationTimeout
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, trace_operation

from .models import Decision


class Stopwatch:
    """Wall-clock timer based on ``perf_counter``."""

    def __init__(self):
        self._start = time.perf_counter()

    def elapsed_seconds(self) -> float:
        return max(0.0, time.perf_counter() - self._start)

    def elapsed_ms(self) -> float:
        return self.elapsed_seconds() * 1000


class Deadline:
    """Caller deadline measured on a stopwatch; ``timeout_ms=None`` never expires.

    Evaluators are synchronous and cannot be interrupted, so the engine checks
    the deadline between evaluator calls.
    """

    def __init__(self, timeout_ms: Optional[float], stopwatch: Optional[Stopwatch] = None):
        self.timeout_ms = timeout_ms
        self.stopwatch = stopwatch or Stopwatch()

    def expired(self) -> bool:
        return self.timeout_ms is not None and self.stopwatch.elapsed_ms() > self.timeout_ms

    def check(self):
        """Raise ``EvaluationTimeout`` once the deadline has passed."""
        if self.expired():
            raise EvaluationTimeout(details={"timeout_ms": self.timeout_ms})


class EvaluationTelemetry:
    """Stamps decisions with their cost and reports it."""

    def __init__(self, metrics: MetricsCollector, latency_budget_ms: float = 5.0):
        self.metrics = metrics
        self.latency_budget_ms = latency_budget_ms
        self.logger = get_logger("policy.telemetry")

    @contextmanager
    def measure(self, operation: str, **attributes):
        """Open a span for ``operation`` and yield a running stopwatch."""
        with trace_operation(f"policy.{operation}", **attributes):
            yield Stopwatch()

    def complete(
        self,
        operation: str,
        stopwatch: Stopwatch,
        decision: Decision,
        kind: Optional[str] = None,
        annotate_span: bool = True,
    ) -> Decision:
        """Attach the elapsed time to ``decision`` and record metrics."""
        decision.evaluation_time_ms = stopwatch.elapsed_ms()
        duration = decision.evaluation_time_ms / 1000

        if operation == "evaluate_all":
            self.metrics.record_batch(decision.allowed, duration)
        else:
            self.metrics.record_evaluation(kind or "unknown", decision.allowed, duration)

        if annotate_span:
            add_span_attributes(
                **{
                    "policy.allowed": decision.allowed,
                    "policy.applied_count": len(decision.applied_policies),
                    "policy.evaluation_time_ms": decision.evaluation_time_ms,
                }
            )

        if operation == "evaluate" and decision.evaluation_time_ms > self.latency_budget_ms:
            self.metrics.increment_counter("latency_budget_exceeded_total", operation=operation)
            self.logger.warning(
                "Evaluation exceeded latency budget",
                kind=kind,
                evaluation_time_ms=decision.evaluation_time_ms,
                budget_ms=self.latency_budget_ms,
                applied_policies=decision.applied_policies,
            )

        return decision

    def record_timeout(self, operation: str, timeout_ms: Optional[float]):
        self.metrics.increment_counter("evaluation_timeouts_total", operation=operation)
        self.logger.warning("Evaluation timed out", operation=operation, timeout_ms=timeout_ms)
