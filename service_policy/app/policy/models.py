"""
Policy data models for the policy engine.

Policies are frozen dataclasses, one per kind, sharing the common
``policy_id``/``name``/``status`` fields. Every policy validates itself in
``__post_init__`` and raises ``ConfigurationError`` when malformed, so a
policy that exists is a policy that can be evaluated.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from shared.errors import ConfigurationError


def _normalize(value: str) -> str:
    return value.replace("_", "").replace("-", "").lower()


class _LenientEnum(str, Enum):
    """Accepts member names and values regardless of case and separators.

    ``"RateLimit"``, ``"rate-limit"`` and ``"RATE_LIMIT"`` all resolve to
    the ``"rate_limit"`` member.
    """

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            wanted = _normalize(value)
            for member in cls:
                if _normalize(member.value) == wanted or _normalize(member.name) == wanted:
                    return member
        return None


class PolicyKind(_LenientEnum):
    """Policy kinds."""
    RBAC = "rbac"
    ABAC = "abac"
    CONTENT_FILTER = "content_filter"
    RATE_LIMIT = "rate_limit"
    DATA_MASKING = "data_masking"
    FRAUD_PREVENTION = "fraud_prevention"
    COMPLIANCE = "compliance"


class PolicyStatus(_LenientEnum):
    """Policy lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class ConditionOperator(_LenientEnum):
    """Condition operators."""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"


class FilterType(_LenientEnum):
    """Content filter types."""
    KEYWORD = "keyword"
    REGEX = "regex"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"


class ContentAction(_LenientEnum):
    """Action taken when a content filter matches."""
    DENY = "deny"
    FLAG = "flag"


class LimitAction(_LenientEnum):
    """Action taken when a rate limit is exceeded."""
    DENY = "deny"
    FLAG = "flag"


class MaskingType(_LenientEnum):
    """Data masking strategies."""
    PARTIAL = "partial"
    FULL = "full"
    HASH = "hash"


class RiskLevel(_LenientEnum):
    """Fraud risk classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SuspicionAction(_LenientEnum):
    """Action taken when the fraud score reaches the threshold."""
    DENY = "deny"
    FLAG = "flag"
    CHALLENGE = "challenge"


WILDCARD = "*"


def _freeze_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


def deep_freeze(value: Any) -> Any:
    """Read-only copy of a payload: mappings become proxies, lists tuples, sets frozensets."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: deep_freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(deep_freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(deep_freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Plain dict/list form of a frozen payload, for serialization."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((thaw(item) for item in value), key=repr)
    return value


def _require(condition: bool, message: str, **details):
    if not condition:
        raise ConfigurationError(message, details=details)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class PolicyContext:
    """Request context a policy is evaluated against.

    Fields are deep-frozen on construction, so a caller mutating its own
    payload cannot change a context while policies are being evaluated.
    ``to_dict`` returns plain copies.
    """
    subject: Mapping[str, Any] = field(default_factory=dict)
    resource: Mapping[str, Any] = field(default_factory=dict)
    action: str = ""
    data: Any = None

    def __post_init__(self):
        object.__setattr__(self, "subject", deep_freeze(self.subject or {}))
        object.__setattr__(self, "resource", deep_freeze(self.resource or {}))
        object.__setattr__(self, "data", deep_freeze(self.data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": thaw(self.subject),
            "resource": thaw(self.resource),
            "action": self.action,
            "data": thaw(self.data),
        }


@dataclass(frozen=True)
class Condition:
    """Attribute comparison."""
    attribute: str
    operator: ConditionOperator
    value: Any = None
    case_sensitive: bool = False

    def __post_init__(self):
        _require(bool(self.attribute), "Condition attribute is required")
        try:
            object.__setattr__(self, "operator", ConditionOperator(self.operator))
        except ValueError:
            raise ConfigurationError(
                f"Unknown condition operator: {self.operator}",
                details={"attribute": self.attribute},
            )
        if self.operator in (ConditionOperator.IN, ConditionOperator.NIN):
            _require(
                isinstance(self.value, (list, tuple, set, frozenset)),
                f"Operator {self.operator.value} requires a list value",
                attribute=self.attribute,
            )
            object.__setattr__(self, "value", tuple(self.value))
        if self.operator == ConditionOperator.REGEX:
            _require(isinstance(self.value, str), "Regex condition requires a string pattern", attribute=self.attribute)
            try:
                re.compile(self.value)
            except re.error as e:
                raise ConfigurationError(
                    f"Invalid regex pattern: {e}",
                    details={"attribute": self.attribute, "pattern": self.value},
                )

    def describe(self) -> str:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return f"{self.attribute} {self.operator.value} {value}"


@dataclass(frozen=True)
class ContentFilter:
    """Single content filter."""
    type: FilterType
    pattern: str = ""
    case_sensitive: bool = False

    def __post_init__(self):
        try:
            object.__setattr__(self, "type", FilterType(self.type))
        except ValueError:
            raise ConfigurationError(f"Unknown content filter type: {self.type}")
        if self.type in (FilterType.KEYWORD, FilterType.REGEX):
            _require(bool(self.pattern), f"{self.type.value} filter requires a pattern")
        if self.type == FilterType.REGEX:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ConfigurationError(f"Invalid regex pattern: {e}", details={"pattern": self.pattern})

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "pattern": self.pattern, "case_sensitive": self.case_sensitive}


@dataclass(frozen=True)
class FraudSignal:
    """Weighted fraud signal; ``attribute`` optionally supplies a live value."""
    name: str
    value: float = 0.0
    weight: float = 1.0
    attribute: Optional[str] = None

    def __post_init__(self):
        _require(bool(self.name), "Fraud signal name is required")
        _require(_is_number(self.value), "Fraud signal value must be numeric", signal=self.name)
        _require(_is_number(self.weight), "Fraud signal weight must be numeric", signal=self.name)


@dataclass(frozen=True)
class ComplianceRequirement:
    """Single compliance requirement."""
    requirement_id: str
    description: str = ""
    applies_to: Tuple[str, ...] = ()
    conditions: Tuple[Condition, ...] = ()

    def __post_init__(self):
        _require(bool(self.requirement_id), "Compliance requirement id is required")
        object.__setattr__(self, "applies_to", tuple(self.applies_to))
        object.__setattr__(self, "conditions", tuple(self.conditions))


@dataclass(frozen=True)
class BasePolicy:
    """Fields shared by every policy kind."""
    kind: ClassVar[PolicyKind]

    policy_id: str
    name: str = ""
    status: PolicyStatus = PolicyStatus.ACTIVE

    def __post_init__(self):
        _require(bool(self.policy_id), "Policy id is required")
        try:
            object.__setattr__(self, "status", PolicyStatus(self.status))
        except ValueError:
            raise ConfigurationError(f"Unknown policy status: {self.status}", details={"policy_id": self.policy_id})
        if not self.name:
            object.__setattr__(self, "name", self.policy_id)

    @property
    def is_active(self) -> bool:
        return self.status == PolicyStatus.ACTIVE


@dataclass(frozen=True)
class RBACPolicy(BasePolicy):
    """Role-based access control."""
    kind: ClassVar[PolicyKind] = PolicyKind.RBAC

    role: str = ""
    resource: str = WILDCARD
    action: str = WILDCARD
    conditions: Tuple[Condition, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        _require(bool(self.role), "RBAC policy requires a role", policy_id=self.policy_id)
        _require(bool(self.resource), "RBAC policy requires a resource pattern", policy_id=self.policy_id)
        _require(bool(self.action), "RBAC policy requires an action pattern", policy_id=self.policy_id)
        object.__setattr__(self, "conditions", tuple(self.conditions))


@dataclass(frozen=True)
class ABACPolicy(BasePolicy):
    """Attribute-based access control."""
    kind: ClassVar[PolicyKind] = PolicyKind.ABAC

    subject_attrs: Mapping[str, Any] = field(default_factory=dict)
    resource_attrs: Mapping[str, Any] = field(default_factory=dict)
    conditions: Tuple[Condition, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "subject_attrs", _freeze_mapping(self.subject_attrs))
        object.__setattr__(self, "resource_attrs", _freeze_mapping(self.resource_attrs))
        object.__setattr__(self, "conditions", tuple(self.conditions))


@dataclass(frozen=True)
class ContentFilterPolicy(BasePolicy):
    """Content filtering over ``context.data``."""
    kind: ClassVar[PolicyKind] = PolicyKind.CONTENT_FILTER

    filters: Tuple[ContentFilter, ...] = ()
    on_match_action: ContentAction = ContentAction.DENY

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "filters", tuple(self.filters))
        _require(len(self.filters) > 0, "Content filter policy requires at least one filter", policy_id=self.policy_id)
        try:
            object.__setattr__(self, "on_match_action", ContentAction(self.on_match_action))
        except ValueError:
            raise ConfigurationError(f"Unknown content action: {self.on_match_action}", details={"policy_id": self.policy_id})


@dataclass(frozen=True)
class RateLimitPolicy(BasePolicy):
    """Rate limit configuration; counting happens in an external store."""
    kind: ClassVar[PolicyKind] = PolicyKind.RATE_LIMIT

    limit: int = 0
    window_seconds: int = 0
    scope: str = ""
    on_exceed_action: LimitAction = LimitAction.DENY

    def __post_init__(self):
        super().__post_init__()
        _require(isinstance(self.limit, int) and not isinstance(self.limit, bool) and self.limit > 0,
                 "Rate limit must be a positive integer", policy_id=self.policy_id)
        _require(isinstance(self.window_seconds, int) and not isinstance(self.window_seconds, bool)
                 and self.window_seconds > 0,
                 "Rate limit window must be a positive integer", policy_id=self.policy_id)
        _require(bool(self.scope), "Rate limit policy requires a scope", policy_id=self.policy_id)
        try:
            object.__setattr__(self, "on_exceed_action", LimitAction(self.on_exceed_action))
        except ValueError:
            raise ConfigurationError(f"Unknown rate limit action: {self.on_exceed_action}", details={"policy_id": self.policy_id})


@dataclass(frozen=True)
class DataMaskingPolicy(BasePolicy):
    """Signals downstream masking of fields; never blocks."""
    kind: ClassVar[PolicyKind] = PolicyKind.DATA_MASKING

    fields: Tuple[str, ...] = ()
    masking_type: MaskingType = MaskingType.FULL
    conditions: Tuple[Condition, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "conditions", tuple(self.conditions))
        _require(len(self.fields) > 0, "Data masking policy requires at least one field", policy_id=self.policy_id)
        try:
            object.__setattr__(self, "masking_type", MaskingType(self.masking_type))
        except ValueError:
            raise ConfigurationError(f"Unknown masking type: {self.masking_type}", details={"policy_id": self.policy_id})


@dataclass(frozen=True)
class FraudPreventionPolicy(BasePolicy):
    """Weighted fraud scoring."""
    kind: ClassVar[PolicyKind] = PolicyKind.FRAUD_PREVENTION

    risk_level: RiskLevel = RiskLevel.MEDIUM
    signals: Tuple[FraudSignal, ...] = ()
    min_score: float = 0.0
    on_suspicion_action: SuspicionAction = SuspicionAction.DENY

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "signals", tuple(self.signals))
        _require(len(self.signals) > 0, "Fraud prevention policy requires at least one signal", policy_id=self.policy_id)
        _require(_is_number(self.min_score), "Fraud prevention min_score must be numeric", policy_id=self.policy_id)
        try:
            object.__setattr__(self, "risk_level", RiskLevel(self.risk_level))
            object.__setattr__(self, "on_suspicion_action", SuspicionAction(self.on_suspicion_action))
        except ValueError as e:
            raise ConfigurationError(str(e), details={"policy_id": self.policy_id})


@dataclass(frozen=True)
class CompliancePolicy(BasePolicy):
    """Regulatory compliance requirements."""
    kind: ClassVar[PolicyKind] = PolicyKind.COMPLIANCE

    framework: str = ""
    audit_required: bool = False
    requirements: Tuple[ComplianceRequirement, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "requirements", tuple(self.requirements))
        _require(bool(self.framework), "Compliance policy requires a framework", policy_id=self.policy_id)
        _require(len(self.requirements) > 0, "Compliance policy requires at least one requirement",
                 policy_id=self.policy_id)
        ids = [r.requirement_id for r in self.requirements]
        _require(len(ids) == len(set(ids)), "Compliance requirement ids must be unique", policy_id=self.policy_id)


Policy = Union[
    RBACPolicy,
    ABACPolicy,
    ContentFilterPolicy,
    RateLimitPolicy,
    DataMaskingPolicy,
    FraudPreventionPolicy,
    CompliancePolicy,
]


@dataclass
class Decision:
    """Result of evaluating one policy or a batch."""
    allowed: bool
    reason: str
    applied_policies: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    evaluation_time_ms: float = 0.0


@dataclass
class EvaluationResult:
    """Public wrapper around a decision."""
    decision: Decision
    trace_id: Optional[str] = None
