"""
Per-kind policy evaluators.

Each evaluator is a pure function ``(policy, context) -> Decision``. The
engine selects one through ``get_evaluator`` and takes care of timing,
inactive policies and the collaborator side effects (rate limit forwarding,
compliance auditing).
"""

import json
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional

from shared.errors import ConfigurationError

from .conditions import first_failing, strict_equals
from .models import (
    ABACPolicy,
    CompliancePolicy,
    ComplianceRequirement,
    ContentAction,
    ContentFilter,
    ContentFilterPolicy,
    DataMaskingPolicy,
    Decision,
    FilterType,
    FraudPreventionPolicy,
    PolicyContext,
    PolicyKind,
    RBACPolicy,
    RateLimitPolicy,
    SuspicionAction,
    WILDCARD,
    thaw,
)
from .resolver import UNDEFINED, resolve

Evaluator = Callable[[Any, PolicyContext], Decision]

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_PATTERN = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
URL_PATTERN = re.compile(
    r"https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_+.~#?&/=]*)"
)

ANONYMOUS_SCOPE = "anonymous"


def _decision(policy, allowed: bool, reason: str, metadata: Optional[Dict[str, Any]] = None) -> Decision:
    return Decision(
        allowed=allowed,
        reason=reason,
        applied_policies=[policy.policy_id],
        metadata=metadata or {},
    )


def match_pattern(value: Any, pattern: str) -> bool:
    """Wildcard match: ``*`` matches anything, ``users/*`` matches a prefix."""
    if pattern == WILDCARD:
        return True
    if not isinstance(value, str):
        return False
    if WILDCARD not in pattern:
        return value == pattern
    regex = ".*".join(re.escape(part) for part in pattern.split(WILDCARD))
    return re.fullmatch(regex, value) is not None


def _condition_failed(policy, condition) -> Decision:
    return _decision(policy, False, f"Condition failed: {condition.describe()}")


# ===== Access control =====

def evaluate_rbac(policy: RBACPolicy, context: PolicyContext) -> Decision:
    role = context.subject.get("role")
    if policy.role != WILDCARD:
        if isinstance(role, (list, tuple)):
            role_matches = policy.role in role
        else:
            role_matches = role == policy.role
        if not role_matches:
            return _decision(policy, False, f"Role mismatch: expected {policy.role}, got {role}")

    resource_name = context.resource.get("name")
    if not match_pattern(resource_name, policy.resource):
        return _decision(
            policy, False, f"Resource mismatch: {resource_name} does not match {policy.resource}"
        )

    if policy.action != WILDCARD and context.action != policy.action:
        return _decision(policy, False, f"Action mismatch: expected {policy.action}, got {context.action}")

    failed = first_failing(policy.conditions, context)
    if failed is not None:
        return _condition_failed(policy, failed)

    return _decision(policy, True, "Access granted")


def _attrs_mismatch(expected, actual) -> Optional[str]:
    for key, value in expected.items():
        if key not in actual or not strict_equals(actual[key], value):
            return key
    return None


def evaluate_abac(policy: ABACPolicy, context: PolicyContext) -> Decision:
    key = _attrs_mismatch(policy.subject_attrs, context.subject)
    if key is not None:
        return _decision(policy, False, f"Subject attribute mismatch: {key}")

    key = _attrs_mismatch(policy.resource_attrs, context.resource)
    if key is not None:
        return _decision(policy, False, f"Resource attribute mismatch: {key}")

    failed = first_failing(policy.conditions, context)
    if failed is not None:
        return _condition_failed(policy, failed)

    return _decision(policy, True, "Access granted")


# ===== Content filtering =====

def content_as_text(data: Any) -> str:
    """Coerce a payload to the text content filters run against."""
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    if isinstance(data, (Mapping, list, tuple, set, frozenset)):
        return json.dumps(thaw(data), sort_keys=True, default=str)
    return str(data)


def _filter_matches(content_filter: ContentFilter, text: str) -> bool:
    if content_filter.type == FilterType.KEYWORD:
        if content_filter.case_sensitive:
            return content_filter.pattern in text
        return content_filter.pattern.lower() in text.lower()

    elif content_filter.type == FilterType.REGEX:
        flags = 0 if content_filter.case_sensitive else re.IGNORECASE
        return re.search(content_filter.pattern, text, flags) is not None

    elif content_filter.type == FilterType.EMAIL:
        return EMAIL_PATTERN.search(text) is not None

    elif content_filter.type == FilterType.PHONE:
        return PHONE_PATTERN.search(text) is not None

    elif content_filter.type == FilterType.URL:
        return URL_PATTERN.search(text) is not None

    return False


def evaluate_content_filter(policy: ContentFilterPolicy, context: PolicyContext) -> Decision:
    text = content_as_text(context.data)

    for content_filter in policy.filters:
        if not _filter_matches(content_filter, text):
            continue

        metadata = {"matched_filter": content_filter.to_dict(), "action": policy.on_match_action.value}
        if policy.on_match_action == ContentAction.DENY:
            return _decision(policy, False, f"Content blocked: {content_filter.type.value} matched", metadata)
        return _decision(policy, True, f"Content flagged: {content_filter.type.value} matched", metadata)

    return _decision(policy, True, "Content allowed")


# ===== Rate limiting =====

def rate_limit_scope_key(policy: RateLimitPolicy, context: PolicyContext) -> str:
    value = resolve(policy.scope, context)
    if value is UNDEFINED or value is None or value == "":
        value = ANONYMOUS_SCOPE
    return f"{policy.policy_id}:{value}"


def evaluate_rate_limit(policy: RateLimitPolicy, context: PolicyContext) -> Decision:
    return _decision(
        policy,
        True,
        "Rate limit check forwarded",
        {
            "limit": policy.limit,
            "window": policy.window_seconds,
            "scope": policy.scope,
            "scope_key": rate_limit_scope_key(policy, context),
            "on_exceed_action": policy.on_exceed_action.value,
        },
    )


# ===== Data masking =====

def evaluate_data_masking(policy: DataMaskingPolicy, context: PolicyContext) -> Decision:
    if first_failing(policy.conditions, context) is not None:
        return _decision(policy, True, "Masking conditions not met")

    return _decision(
        policy,
        True,
        "Data masking applied",
        {"fields": list(policy.fields), "masking_type": policy.masking_type.value},
    )


# ===== Fraud prevention =====

def _signal_value(signal, context: PolicyContext) -> float:
    if signal.attribute:
        live = resolve(signal.attribute, context)
        if isinstance(live, (int, float)) and not isinstance(live, bool):
            return live
    return signal.value


def evaluate_fraud_prevention(policy: FraudPreventionPolicy, context: PolicyContext) -> Decision:
    fraud_score = 0.0
    signals: List[Dict[str, Any]] = []

    for signal in policy.signals:
        value = _signal_value(signal, context)
        contribution = value * signal.weight
        fraud_score += contribution
        signals.append({
            "name": signal.name,
            "value": value,
            "weight": signal.weight,
            "contribution": contribution,
        })

    metadata: Dict[str, Any] = {
        "fraud_score": fraud_score,
        "risk_level": policy.risk_level.value,
        "min_score": policy.min_score,
        "signals": signals,
    }

    if fraud_score < policy.min_score:
        return _decision(policy, True, "Risk score within threshold", metadata)

    action = policy.on_suspicion_action
    metadata["action"] = action.value
    reason = f"Fraud risk detected: score {fraud_score:.2f} >= threshold {policy.min_score} ({action.value})"
    return _decision(policy, action != SuspicionAction.DENY, reason, metadata)


# ===== Compliance =====

def requirement_applies(requirement: ComplianceRequirement, context: PolicyContext) -> bool:
    """Empty ``applies_to`` is unconditional; otherwise match action or resource name."""
    if not requirement.applies_to:
        return True
    targets = (context.action, context.resource.get("name"))
    return any(
        match_pattern(target, pattern)
        for pattern in requirement.applies_to
        for target in targets
    )


def evaluate_compliance(policy: CompliancePolicy, context: PolicyContext) -> Decision:
    evaluated: List[str] = []
    failed: List[str] = []
    failures: Dict[str, str] = {}

    for requirement in policy.requirements:
        if not requirement_applies(requirement, context):
            continue
        evaluated.append(requirement.requirement_id)
        condition = first_failing(requirement.conditions, context)
        if condition is not None:
            failed.append(requirement.requirement_id)
            failures[requirement.requirement_id] = condition.describe()

    metadata: Dict[str, Any] = {
        "framework": policy.framework,
        "audit_required": policy.audit_required,
        "evaluated_requirements": evaluated,
        "failed_requirements": failed,
    }

    if failed:
        metadata["failures"] = failures
        return _decision(policy, False, f"Compliance requirement failed: {failed[0]}", metadata)

    return _decision(policy, True, "All compliance requirements met", metadata)


EVALUATORS: Dict[PolicyKind, Evaluator] = {
    PolicyKind.RBAC: evaluate_rbac,
    PolicyKind.ABAC: evaluate_abac,
    PolicyKind.CONTENT_FILTER: evaluate_content_filter,
    PolicyKind.RATE_LIMIT: evaluate_rate_limit,
    PolicyKind.DATA_MASKING: evaluate_data_masking,
    PolicyKind.FRAUD_PREVENTION: evaluate_fraud_prevention,
    PolicyKind.COMPLIANCE: evaluate_compliance,
}


def get_evaluator(policy: Any) -> Evaluator:
    """Select the evaluator for a policy's kind."""
    kind = getattr(policy, "kind", None)
    try:
        evaluator = EVALUATORS.get(PolicyKind(kind))
    except ValueError:
        evaluator = None

    if evaluator is None:
        raise ConfigurationError(
            f"Unknown policy kind: {kind}",
            details={"policy_id": getattr(policy, "policy_id", None)},
        )
    return evaluator
