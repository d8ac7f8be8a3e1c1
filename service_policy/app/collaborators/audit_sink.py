"""
Audit sinks for compliance decisions.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..policy.models import Decision, PolicyContext


@dataclass
class AuditEvent:
    """Record of a compliance decision."""
    policy_id: str
    framework: str
    allowed: bool
    reason: str
    context_digest: str
    timestamp: float = field(default_factory=time.time)
    failed_requirements: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def context_digest(context: PolicyContext) -> str:
    """SHA-256 of the canonical JSON form of a context."""
    payload = json.dumps(context.to_dict(), sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def build_audit_event(policy, decision: Decision, context: PolicyContext) -> AuditEvent:
    return AuditEvent(
        policy_id=policy.policy_id,
        framework=policy.framework,
        allowed=decision.allowed,
        reason=decision.reason,
        context_digest=context_digest(context),
        failed_requirements=list(decision.metadata.get("failed_requirements", [])),
    )


class AuditSink:
    """Interface for audit sinks."""

    async def record(self, event: AuditEvent):
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    """Writes audit events to the structured log."""

    def __init__(self):
        self.logger = get_logger("policy.audit")

    async def record(self, event: AuditEvent):
        self.logger.info("Compliance decision", **event.to_dict())


class InMemoryAuditSink(AuditSink):
    """Keeps audit events in a list."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def record(self, event: AuditEvent):
        self.events.append(event)


class AuditDispatcher:
    """Fire-and-forget delivery of audit events to a sink."""

    def __init__(self, sink: AuditSink, metrics: MetricsCollector):
        self.sink = sink
        self.metrics = metrics
        self.logger = get_logger("policy.audit_dispatcher")
        self._pending: Set[asyncio.Task] = set()

    def emit(self, event: AuditEvent):
        """Schedule delivery without waiting for it."""
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: AuditEvent):
        try:
            await self.sink.record(event)
            self.metrics.increment_counter("audit_events_total", status="recorded")
        except Exception as e:
            # Audit failures never affect the decision
            self.metrics.increment_counter("audit_events_total", status="failed")
            self.logger.warning(
                "Audit sink failed",
                policy_id=event.policy_id,
                framework=event.framework,
                error=str(e)
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait for in-flight deliveries, e.g. on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
