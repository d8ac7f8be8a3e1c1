"""
Policy evaluation engine.
"""

import asyncio
from typing import Any, Iterable, List, Optional

from shared.circuit_breaker import CircuitBreaker
from shared.config import PolicyEngineConfig
from shared.errors import CollaboratorError, ConfigurationError, EvaluationTimeout
from shared.logging import bind_evaluation_context, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.tracing import current_trace_id

from ..collaborators.audit_sink import AuditDispatcher, AuditSink, LoggingAuditSink, build_audit_event
from ..collaborators.rate_limit_store import RateLimitCheck, RateLimitStore
from .aggregator import aggregate
from .evaluators import get_evaluator
from .loader import PolicySource
from .models import (
    CompliancePolicy,
    Decision,
    EvaluationResult,
    LimitAction,
    PolicyContext,
    PolicyKind,
    PolicyStatus,
    RateLimitPolicy,
)
from .telemetry import Deadline, EvaluationTelemetry, Stopwatch


def _policy_id(policy: Any) -> str:
    return str(getattr(policy, "policy_id", "unknown"))


def _subject_id(context: PolicyContext) -> Optional[str]:
    subject_id = context.subject.get("id") if isinstance(context, PolicyContext) else None
    return None if subject_id is None else str(subject_id)


def _first_duplicate(policy_ids: List[str]) -> Optional[str]:
    seen = set()
    for policy_id in policy_ids:
        if policy_id in seen:
            return policy_id
        seen.add(policy_id)
    return None


def _kind_label(policy: Any) -> str:
    kind = getattr(policy, "kind", None)
    return kind.value if isinstance(kind, PolicyKind) else str(kind)


def is_active(policy: Any) -> bool:
    """Policies without a recognisable status are treated as active."""
    status = getattr(policy, "status", PolicyStatus.ACTIVE)
    try:
        return PolicyStatus(status) == PolicyStatus.ACTIVE
    except ValueError:
        return True


class PolicyEvaluator:
    """Evaluates policies against request contexts.

    ``decide`` is the synchronous, side-effect-free core. ``evaluate`` and
    ``evaluate_all`` wrap it with deadlines, timing, rate limit forwarding
    and compliance auditing.
    """

    def __init__(
        self,
        rate_limit_store: Optional[RateLimitStore] = None,
        audit_sink: Optional[AuditSink] = None,
        config: Optional[PolicyEngineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or PolicyEngineConfig()
        self.logger = get_logger("policy.engine")
        self.metrics = metrics or get_metrics_collector(self.config.service_name)
        self.telemetry = EvaluationTelemetry(self.metrics, self.config.latency_budget_ms)

        self.rate_limit_store = rate_limit_store
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.circuit_breaker_failure_threshold,
            recovery_timeout=self.config.circuit_breaker_recovery_timeout,
            name="rate_limit_store",
        )

        self.audit: Optional[AuditDispatcher] = None
        if self.config.audit_enabled:
            self.audit = AuditDispatcher(audit_sink or LoggingAuditSink(), self.metrics)

    # ===== Public API =====

    def decide(self, policy: Any, context: PolicyContext) -> Decision:
        """Run the evaluator for one policy; never raises."""
        policy_id = _policy_id(policy)
        try:
            evaluator = get_evaluator(policy)
            return evaluator(policy, context)
        except ConfigurationError as e:
            return self._configuration_decision(e, [policy_id])
        except Exception as e:
            self.metrics.record_error("evaluation")
            self.logger.error("Policy evaluation error", policy_id=policy_id, error=str(e))
            return Decision(
                allowed=False,
                reason=f"Evaluation error: {e}",
                applied_policies=[policy_id],
                metadata={"error": "EVALUATION_ERROR"},
            )

    async def evaluate(
        self,
        policy: Any,
        context: PolicyContext,
        timeout_ms: Optional[float] = None,
    ) -> EvaluationResult:
        """Evaluate a single policy."""
        timeout_ms = self._resolve_timeout(timeout_ms)
        policy_id = _policy_id(policy)
        kind = _kind_label(policy)

        with bind_evaluation_context(subject_id=_subject_id(context), policy_id=policy_id), \
                self.telemetry.measure("evaluate", **{"policy.id": policy_id, "policy.kind": kind}) as stopwatch:
            if not is_active(policy):
                decision = Decision(allowed=True, reason=f"Policy {policy_id} is inactive")
            else:
                deadline = Deadline(timeout_ms, stopwatch)
                decision = await self._with_deadline(
                    self._evaluate_one(policy, context, deadline), deadline, [policy_id], "evaluate"
                )
            self.telemetry.complete("evaluate", stopwatch, decision, kind)
            trace_id = current_trace_id()

        return EvaluationResult(decision=decision, trace_id=trace_id)

    async def evaluate_all(
        self,
        policies: Iterable[Any],
        context: PolicyContext,
        timeout_ms: Optional[float] = None,
    ) -> EvaluationResult:
        """Evaluate a batch; every active policy must allow."""
        timeout_ms = self._resolve_timeout(timeout_ms)
        policies = list(policies)
        active = [policy for policy in policies if is_active(policy)]
        applied = [_policy_id(policy) for policy in active]

        attributes = {"policy.count": len(policies), "policy.active_count": len(active)}
        with bind_evaluation_context(subject_id=_subject_id(context)), \
                self.telemetry.measure("evaluate_all", **attributes) as stopwatch:
            duplicate = _first_duplicate(applied)
            if duplicate is not None:
                # Batch metadata is keyed by policy id
                error = ConfigurationError(f"Duplicate policy id: {duplicate}", details={"policy_id": duplicate})
                decision = self._configuration_decision(error, applied)
            else:
                deadline = Deadline(timeout_ms, stopwatch)
                decision = await self._with_deadline(
                    self._evaluate_batch(active, context, deadline), deadline, applied, "evaluate_all"
                )
            self.telemetry.complete("evaluate_all", stopwatch, decision)
            trace_id = current_trace_id()

        self.logger.debug(
            "Batch evaluation result",
            allowed=decision.allowed,
            reason=decision.reason,
            applied_policies=decision.applied_policies,
            evaluation_time_ms=decision.evaluation_time_ms,
        )
        return EvaluationResult(decision=decision, trace_id=trace_id)

    async def evaluate_from_source(
        self,
        source: PolicySource,
        context: PolicyContext,
        timeout_ms: Optional[float] = None,
    ) -> EvaluationResult:
        """Fetch the ordered batch from ``source`` and evaluate it."""
        stopwatch = Stopwatch()
        try:
            policies = await source.get_policies(context)
        except ConfigurationError as e:
            self.metrics.record_error("configuration")
            self.logger.warning("Policy source configuration error", error=e.message)
            decision = Decision(allowed=False, reason=f"Configuration error: {e.message}", metadata={"error": e.code})
            return EvaluationResult(decision=self.telemetry.complete("evaluate_all", stopwatch, decision))
        except Exception as e:
            self.metrics.record_error("policy_source")
            self.logger.error("Policy source error", error=str(e))
            decision = Decision(allowed=False, reason="Policy source unavailable", metadata={"error": str(e)})
            return EvaluationResult(decision=self.telemetry.complete("evaluate_all", stopwatch, decision))

        return await self.evaluate_all(policies, context, timeout_ms)

    async def close(self):
        """Flush pending audit events and release the store."""
        if self.audit is not None:
            await self.audit.drain()
        if self.rate_limit_store is not None:
            await self.rate_limit_store.close()

    # ===== Internals =====

    def _resolve_timeout(self, timeout_ms: Optional[float]) -> Optional[float]:
        return self.config.evaluation_timeout_ms if timeout_ms is None else timeout_ms

    def _configuration_decision(self, error: ConfigurationError, applied: List[str]) -> Decision:
        self.metrics.record_error("configuration")
        self.logger.warning("Policy configuration error", applied_policies=applied, error=error.message)
        return Decision(
            allowed=False,
            reason=f"Configuration error: {error.message}",
            applied_policies=list(applied),
            metadata={"error": error.code, **error.details},
        )

    async def _with_deadline(self, coro, deadline: Deadline, applied: List[str], operation: str) -> Decision:
        timeout_ms = deadline.timeout_ms
        if timeout_ms is not None and timeout_ms <= 0:
            coro.close()
            return self._timeout_decision(applied, timeout_ms, operation)

        try:
            if timeout_ms is None:
                return await coro
            # wait_for covers awaited store calls, Deadline.check the evaluator work between them
            return await asyncio.wait_for(coro, timeout=timeout_ms / 1000)
        except (asyncio.TimeoutError, EvaluationTimeout):
            return self._timeout_decision(applied, timeout_ms, operation)

    def _timeout_decision(self, applied: List[str], timeout_ms: float, operation: str) -> Decision:
        self.telemetry.record_timeout(operation, timeout_ms)
        timeout = EvaluationTimeout(details={"timeout_ms": timeout_ms})
        return Decision(
            allowed=False,
            reason=timeout.message,
            applied_policies=list(applied),
            metadata={"error": timeout.code, **timeout.details},
        )

    async def _evaluate_batch(self, active: List[Any], context: PolicyContext, deadline: Deadline) -> Decision:
        tasks = [asyncio.ensure_future(self._evaluate_timed(policy, context, deadline)) for policy in active]
        try:
            decisions = await asyncio.gather(*tasks)
        except EvaluationTimeout:
            for task in tasks:
                task.cancel()
            raise
        # gather keeps input order, so the fold sees policies as given
        return aggregate([(_policy_id(policy), decision) for policy, decision in zip(active, decisions)])

    async def _evaluate_timed(self, policy: Any, context: PolicyContext, deadline: Deadline) -> Decision:
        stopwatch = Stopwatch()
        decision = await self._evaluate_one(policy, context, deadline)
        return self.telemetry.complete("evaluate", stopwatch, decision, _kind_label(policy), annotate_span=False)

    async def _evaluate_one(self, policy: Any, context: PolicyContext, deadline: Deadline) -> Decision:
        deadline.check()
        decision = self.decide(policy, context)
        deadline.check()

        if isinstance(policy, RateLimitPolicy) and self.rate_limit_store is not None and "scope_key" in decision.metadata:
            decision = await self._forward_rate_limit(policy, decision)
        elif isinstance(policy, CompliancePolicy) and policy.audit_required:
            self._emit_audit(policy, decision, context)

        self.logger.debug(
            "Policy evaluation result",
            policy_id=_policy_id(policy),
            kind=_kind_label(policy),
            allowed=decision.allowed,
            reason=decision.reason,
        )
        return decision

    async def _check_store(self, scope_key: str, policy: RateLimitPolicy) -> RateLimitCheck:
        return await asyncio.wait_for(
            self.rate_limit_store.check(scope_key, policy.limit, policy.window_seconds),
            timeout=self.config.rate_limit_timeout_ms / 1000,
        )

    async def _forward_rate_limit(self, policy: RateLimitPolicy, decision: Decision) -> Decision:
        scope_key = decision.metadata["scope_key"]
        try:
            # The store timeout runs inside the breaker so only it counts as a store failure
            check = await self.circuit_breaker.call(self._check_store, scope_key, policy)
        except asyncio.TimeoutError:
            return self._rate_limit_unavailable(policy, decision, "timeout")
        except CollaboratorError as e:
            return self._rate_limit_unavailable(policy, decision, e.message)
        except Exception as e:
            return self._rate_limit_unavailable(policy, decision, str(e))

        return self._apply_rate_limit(policy, decision, check)

    def _apply_rate_limit(self, policy: RateLimitPolicy, decision: Decision, check: RateLimitCheck) -> Decision:
        metadata = {
            **decision.metadata,
            "remaining": check.remaining,
            "reset_at": check.reset_at,
            "current_count": check.current_count,
        }

        if check.allowed:
            self.metrics.increment_counter("rate_limit_checks_total", result="allowed")
            return Decision(True, "Rate limit check passed", decision.applied_policies, metadata)

        self.metrics.increment_counter("rate_limit_checks_total", result="exceeded")
        reason = f"Rate limit exceeded: {policy.limit} per {policy.window_seconds}s"
        if policy.on_exceed_action == LimitAction.DENY:
            return Decision(False, reason, decision.applied_policies, metadata)

        metadata["flagged"] = True
        return Decision(True, f"{reason} (flagged)", decision.applied_policies, metadata)

    def _rate_limit_unavailable(self, policy: RateLimitPolicy, decision: Decision, error: str) -> Decision:
        fail_open = self.config.rate_limit_fail_open
        self.metrics.increment_counter("rate_limit_checks_total", result="error")
        self.metrics.record_error("rate_limit_store")
        self.logger.warning(
            "Rate limit store unavailable",
            policy_id=policy.policy_id,
            scope_key=decision.metadata.get("scope_key"),
            fail_open=fail_open,
            error=error,
        )

        metadata = {**decision.metadata, "rate_limit_error": error, "fail_open": fail_open}
        if fail_open:
            return Decision(True, "Rate limit store unavailable, failing open", decision.applied_policies, metadata)
        return Decision(False, "Rate limit store unavailable", decision.applied_policies, metadata)

    def _emit_audit(self, policy: CompliancePolicy, decision: Decision, context: PolicyContext):
        if self.audit is None:
            return
        try:
            self.audit.emit(build_audit_event(policy, decision, context))
        except Exception as e:
            self.metrics.increment_counter("audit_events_total", status="failed")
            self.logger.warning("Audit emission failed", policy_id=policy.policy_id, error=str(e))
