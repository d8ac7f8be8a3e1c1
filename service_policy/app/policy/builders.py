"""
Fluent builders producing immutable policies.

    policy = (
        RBACPolicyBuilder("admin-all", "Admins do anything")
        .role("admin")
        .resource("*")
        .action("*")
        .build()
    )

``build()`` constructs the frozen dataclass, which validates itself; a
malformed policy raises ``ConfigurationError`` here rather than at
evaluation time.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import (
    ABACPolicy,
    CompliancePolicy,
    ComplianceRequirement,
    Condition,
    ConditionOperator,
    ContentAction,
    ContentFilter,
    ContentFilterPolicy,
    DataMaskingPolicy,
    FilterType,
    FraudPreventionPolicy,
    FraudSignal,
    LimitAction,
    MaskingType,
    PolicyStatus,
    RBACPolicy,
    RateLimitPolicy,
    RiskLevel,
    SuspicionAction,
    WILDCARD,
)


class PolicyBuilder:
    """Common fields: id, name, status."""

    def __init__(self, policy_id: str, name: str = ""):
        self._policy_id = policy_id
        self._name = name
        self._status = PolicyStatus.ACTIVE

    def name(self, name: str):
        self._name = name
        return self

    def status(self, status: PolicyStatus):
        self._status = status
        return self

    def active(self):
        return self.status(PolicyStatus.ACTIVE)

    def inactive(self):
        return self.status(PolicyStatus.INACTIVE)

    def _common(self) -> Dict[str, Any]:
        return {"policy_id": self._policy_id, "name": self._name, "status": self._status}


class _ConditionsMixin:
    _conditions: List[Condition]

    def when(self, attribute: str, operator: ConditionOperator, value: Any = None, case_sensitive: bool = False):
        """Add a condition; all conditions must hold."""
        self._conditions.append(Condition(attribute, operator, value, case_sensitive))
        return self

    def conditions(self, conditions: Iterable[Condition]):
        self._conditions.extend(conditions)
        return self


class RBACPolicyBuilder(_ConditionsMixin, PolicyBuilder):
    """Builder for role-based policies."""

    def __init__(self, policy_id: str, name: str = ""):
        super().__init__(policy_id, name)
        self._role = ""
        self._resource = WILDCARD
        self._action = WILDCARD
        self._conditions: List[Condition] = []

    def role(self, role: str):
        self._role = role
        return self

    def resource(self, pattern: str):
        self._resource = pattern
        return self

    def action(self, pattern: str):
        self._action = pattern
        return self

    def build(self) -> RBACPolicy:
        return RBACPolicy(
            **self._common(),
            role=self._role,
            resource=self._resource,
            action=self._action,
            conditions=tuple(self._conditions),
        )


class ABACPolicyBuilder(_ConditionsMixin, PolicyBuilder):
    """Builder for attribute-based policies."""

    def __init__(self, policy_id: str, name: str = ""):
        super().__init__(policy_id, name)
        self._subject_attrs: Dict[str, Any] = {}
        self._resource_attrs: Dict[str, Any] = {}
        self._conditions: List[Condition] = []

    def subject_attr(self, key: str, value: Any):
        self._subject_attrs[key] = value
        return self

    def subject_attrs(self, attrs: Mapping[str, Any]):
        self._subject_attrs.update(attrs)
        return self

    def resource_attr(self, key: str, value: Any):
        self._resource_attrs[key] = value
        return self

    def resource_attrs(self, attrs: Mapping[str, Any]):
        self._resource_attrs.update(attrs)
        return self

    def build(self) -> ABACPolicy:
        return ABACPolicy(
            **self._common(),
            subject_attrs=dict(self._subject_attrs),
            resource_attrs=dict(self._resource_attrs),
            conditions=tuple(self._conditions),
        )


class ContentFilterPolicyBuilder(PolicyBuilder):
    """Builder for content filter policies."""

    def __init__(self, policy_id: str, name: str = ""):
        super().__init__(policy_id, name)
        self._filters: List[ContentFilter] = []
        self._on_match = ContentAction.DENY

    def filter(self, filter_type: FilterType, pattern: str = "", case_sensitive: bool = False):
        self._filters.append(ContentFilter(filter_type, pattern, case_sensitive))
        return self

    def keyword(self, pattern: str, case_sensitive: bool = False):
        return self.filter(FilterType.KEYWORD, pattern, case_sensitive)

    def regex(self, pattern: str, case_sensitive: bool = False):
        return self.filter(FilterType.REGEX, pattern, case_sensitive)

    def email(self):
        return self.filter(FilterType.EMAIL)

    def phone(self):
        return self.filter(FilterType.PHONE)

    def url(self):
        return self.filter(FilterType.URL)

    def on_match(self, action: ContentAction):
        self._on_match = action
        return self

    def build(self) -> ContentFilterPolicy:
        return ContentFilterPolicy(
            **self._common(),
            filters=tuple(self._filters),
            on_match_action=self._on_match,
        )


class RateLimitPolicyBuilder(PolicyBuilder):
    """Builder for rate limit policies."""

    def __init__(self, policy_id: str, name: str = ""):
        super().__init__(policy_id, name)
        self._limit = 0
        self._window_seconds = 0
        self._scope = "subject.id"
        self._on_exceed = LimitAction.DENY

    def limit(self, limit: int, window_seconds: int):
        self._limit = limit
        self._window_seconds = window_seconds
        return self

    def scope(self, attribute_path: str):
        self._scope = attribute_path
        return self

    def on_exceed(self, action: LimitAction):
        self._on_exceed = action
        return self

    def build(self) -> RateLimitPolicy:
        return RateLimitPolicy(
            **self._common(),
            limit=self._limit,
            window_seconds=self._window_seconds,
            scope=self._scope,
            on_exceed_action=self._on_exceed,
        )


class DataMaskingPolicyBuilder(_ConditionsMixin, PolicyBuilder):
    """Builder for data masking policies."""

    def __init__(self, policy_id: str, name: str = ""):
        super().__init__(policy_id, name)
        self._fields: List[str] = []
        self._masking_type = MaskingType.FULL
        self._conditions: List[Condition] = []

    def fields(self, *fields: str):
        self._fields.extend(fields)
        return self

    def masking(self, masking_type: MaskingType):
        self._masking_type = masking_type
        return self

    def build(self) -> DataMaskingPolicy:
        return DataMaskingPolicy(
            **self._common(),
            fields=tuple(self._fields),
            masking_type=self._masking_type,
            conditions=tuple(self._conditions),
        )


class FraudPreventionPolicyBuilder(PolicyBuilder):
    """Builder for fraud prevention policies."""

    def __init__(self, policy_id: str, name: str = ""):
        super().__init__(policy_id, name)
        self._risk_level = RiskLevel.MEDIUM
        self._signals: List[FraudSignal] = []
        self._min_score: float = 0.0
        self._on_suspicion = SuspicionAction.DENY

    def risk_level(self, level: RiskLevel):
        self._risk_level = level
        return self

    def signal(self, name: str, value: float = 0.0, weight: float = 1.0, attribute: Optional[str] = None):
        self._signals.append(FraudSignal(name, value, weight, attribute))
        return self

    def min_score(self, score: float):
        self._min_score = score
        return self

    def on_suspicion(self, action: SuspicionAction):
        self._on_suspicion = action
        return self

    def build(self) -> FraudPreventionPolicy:
        return FraudPreventionPolicy(
            **self._common(),
            risk_level=self._risk_level,
            signals=tuple(self._signals),
            min_score=self._min_score,
            on_suspicion_action=self._on_suspicion,
        )


class CompliancePolicyBuilder(PolicyBuilder):
    """Builder for compliance policies."""

    def __init__(self, policy_id: str, name: str = ""):
        super().__init__(policy_id, name)
        self._framework = ""
        self._audit_required = False
        self._requirements: List[ComplianceRequirement] = []

    def framework(self, framework: str):
        self._framework = framework
        return self

    def audit(self, required: bool = True):
        self._audit_required = required
        return self

    def requirement(
        self,
        requirement_id: str,
        description: str = "",
        applies_to: Iterable[str] = (),
        conditions: Iterable[Condition] = (),
    ):
        self._requirements.append(
            ComplianceRequirement(requirement_id, description, tuple(applies_to), tuple(conditions))
        )
        return self

    def build(self) -> CompliancePolicy:
        return CompliancePolicy(
            **self._common(),
            framework=self._framework,
            audit_required=self._audit_required,
            requirements=tuple(self._requirements),
        )


def condition(attribute: str, operator: ConditionOperator, value: Any = None, case_sensitive: bool = False) -> Condition:
    """Shorthand for building a condition."""
    return Condition(attribute, operator, value, case_sensitive)


def rbac(policy_id: str, name: str = "") -> RBACPolicyBuilder:
    return RBACPolicyBuilder(policy_id, name)


def abac(policy_id: str, name: str = "") -> ABACPolicyBuilder:
    return ABACPolicyBuilder(policy_id, name)


def content_filter(policy_id: str, name: str = "") -> ContentFilterPolicyBuilder:
    return ContentFilterPolicyBuilder(policy_id, name)


def rate_limit(policy_id: str, name: str = "") -> RateLimitPolicyBuilder:
    return RateLimitPolicyBuilder(policy_id, name)


def data_masking(policy_id: str, name: str = "") -> DataMaskingPolicyBuilder:
    return DataMaskingPolicyBuilder(policy_id, name)


def fraud_prevention(policy_id: str, name: str = "") -> FraudPreventionPolicyBuilder:
    return FraudPreventionPolicyBuilder(policy_id, name)


def compliance(policy_id: str, name: str = "") -> CompliancePolicyBuilder:
    return CompliancePolicyBuilder(policy_id, name)
