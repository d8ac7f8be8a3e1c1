"""
Policy documents and policy sources.

A policy document is a mapping shaped like::

    id: gdpr-consent
    name: GDPR consent
    kind: compliance
    status: active
    rules:
      framework: GDPR
      audit_required: true
      requirements:
        - id: consent
          conditions:
            - {attribute: data.consent.given, operator: eq, value: true}

Documents are validated with pydantic and turned into policies through the
builders, so every validation failure surfaces as ``ConfigurationError``.
"""

from pathlib import Path
from typing import Annotated, Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from shared.errors import ConfigurationError
from shared.logging import get_logger

from . import builders
from .models import (
    Condition,
    ConditionOperator,
    ContentAction,
    FilterType,
    LimitAction,
    MaskingType,
    Policy,
    PolicyContext,
    PolicyKind,
    PolicyStatus,
    RiskLevel,
    SuspicionAction,
)

logger = get_logger("policy.loader")


def _lenient(enum_cls):
    """Resolve enum fields through the enum itself, so aliases like "RateLimit" load."""
    def convert(value):
        return enum_cls(value) if isinstance(value, str) else value
    return Annotated[enum_cls, BeforeValidator(convert)]


KindField = _lenient(PolicyKind)
StatusField = _lenient(PolicyStatus)
OperatorField = _lenient(ConditionOperator)
FilterTypeField = _lenient(FilterType)
ContentActionField = _lenient(ContentAction)
LimitActionField = _lenient(LimitAction)
MaskingTypeField = _lenient(MaskingType)
RiskLevelField = _lenient(RiskLevel)
SuspicionActionField = _lenient(SuspicionAction)


class _Document(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ConditionDocument(_Document):
    attribute: str
    operator: OperatorField
    value: Any = None
    case_sensitive: bool = False


class PolicyDocument(_Document):
    id: str = Field(..., min_length=1)
    name: str = ""
    kind: KindField
    status: StatusField = PolicyStatus.ACTIVE
    rules: Dict[str, Any] = Field(default_factory=dict)


class RBACRules(_Document):
    role: str
    resource: str = "*"
    action: str = "*"
    conditions: List[ConditionDocument] = Field(default_factory=list)


class ABACRules(_Document):
    subject_attrs: Dict[str, Any] = Field(default_factory=dict)
    resource_attrs: Dict[str, Any] = Field(default_factory=dict)
    conditions: List[ConditionDocument] = Field(default_factory=list)


class FilterDocument(_Document):
    type: FilterTypeField
    pattern: str = ""
    case_sensitive: bool = False


class ContentFilterRules(_Document):
    filters: List[FilterDocument]
    on_match_action: ContentActionField = ContentAction.DENY


class RateLimitRules(_Document):
    limit: int
    window_seconds: int
    scope: str = "subject.id"
    on_exceed_action: LimitActionField = LimitAction.DENY


class DataMaskingRules(_Document):
    fields: List[str]
    masking_type: MaskingTypeField = MaskingType.FULL
    conditions: List[ConditionDocument] = Field(default_factory=list)


class SignalDocument(_Document):
    name: str
    value: float = 0.0
    weight: float = 1.0
    attribute: Optional[str] = None


class FraudPreventionRules(_Document):
    risk_level: RiskLevelField = RiskLevel.MEDIUM
    signals: List[SignalDocument]
    min_score: float
    on_suspicion_action: SuspicionActionField = SuspicionAction.DENY


class RequirementDocument(_Document):
    id: str
    description: str = ""
    applies_to: List[str] = Field(default_factory=list)
    conditions: List[ConditionDocument] = Field(default_factory=list)


class ComplianceRules(_Document):
    framework: str
    audit_required: bool = False
    requirements: List[RequirementDocument]


def _conditions(documents: Iterable[ConditionDocument]) -> List[Condition]:
    return [Condition(d.attribute, d.operator, d.value, d.case_sensitive) for d in documents]


def _build_rbac(doc: PolicyDocument) -> Policy:
    rules = RBACRules.model_validate(doc.rules)
    return (
        builders.rbac(doc.id, doc.name)
        .status(doc.status)
        .role(rules.role)
        .resource(rules.resource)
        .action(rules.action)
        .conditions(_conditions(rules.conditions))
        .build()
    )


def _build_abac(doc: PolicyDocument) -> Policy:
    rules = ABACRules.model_validate(doc.rules)
    return (
        builders.abac(doc.id, doc.name)
        .status(doc.status)
        .subject_attrs(rules.subject_attrs)
        .resource_attrs(rules.resource_attrs)
        .conditions(_conditions(rules.conditions))
        .build()
    )


def _build_content_filter(doc: PolicyDocument) -> Policy:
    rules = ContentFilterRules.model_validate(doc.rules)
    builder = builders.content_filter(doc.id, doc.name).status(doc.status).on_match(rules.on_match_action)
    for f in rules.filters:
        builder.filter(f.type, f.pattern, f.case_sensitive)
    return builder.build()


def _build_rate_limit(doc: PolicyDocument) -> Policy:
    rules = RateLimitRules.model_validate(doc.rules)
    return (
        builders.rate_limit(doc.id, doc.name)
        .status(doc.status)
        .limit(rules.limit, rules.window_seconds)
        .scope(rules.scope)
        .on_exceed(rules.on_exceed_action)
        .build()
    )


def _build_data_masking(doc: PolicyDocument) -> Policy:
    rules = DataMaskingRules.model_validate(doc.rules)
    return (
        builders.data_masking(doc.id, doc.name)
        .status(doc.status)
        .fields(*rules.fields)
        .masking(rules.masking_type)
        .conditions(_conditions(rules.conditions))
        .build()
    )


def _build_fraud_prevention(doc: PolicyDocument) -> Policy:
    rules = FraudPreventionRules.model_validate(doc.rules)
    builder = (
        builders.fraud_prevention(doc.id, doc.name)
        .status(doc.status)
        .risk_level(rules.risk_level)
        .min_score(rules.min_score)
        .on_suspicion(rules.on_suspicion_action)
    )
    for s in rules.signals:
        builder.signal(s.name, s.value, s.weight, s.attribute)
    return builder.build()


def _build_compliance(doc: PolicyDocument) -> Policy:
    rules = ComplianceRules.model_validate(doc.rules)
    builder = (
        builders.compliance(doc.id, doc.name)
        .status(doc.status)
        .framework(rules.framework)
        .audit(rules.audit_required)
    )
    for r in rules.requirements:
        builder.requirement(r.id, r.description, r.applies_to, _conditions(r.conditions))
    return builder.build()


_BUILDERS: Dict[PolicyKind, Callable[[PolicyDocument], Policy]] = {
    PolicyKind.RBAC: _build_rbac,
    PolicyKind.ABAC: _build_abac,
    PolicyKind.CONTENT_FILTER: _build_content_filter,
    PolicyKind.RATE_LIMIT: _build_rate_limit,
    PolicyKind.DATA_MASKING: _build_data_masking,
    PolicyKind.FRAUD_PREVENTION: _build_fraud_prevention,
    PolicyKind.COMPLIANCE: _build_compliance,
}


def load_policy(document: Mapping[str, Any]) -> Policy:
    """Validate one policy document and build the policy."""
    try:
        doc = PolicyDocument.model_validate(document)
        return _BUILDERS[doc.kind](doc)
    except ValidationError as e:
        policy_id = document.get("id") if isinstance(document, Mapping) else None
        raise ConfigurationError(
            f"Invalid policy document: {policy_id}",
            details={"policy_id": policy_id, "errors": e.errors(include_url=False)},
        )


def load_policies(documents: Iterable[Mapping[str, Any]]) -> List[Policy]:
    """Build an ordered list of policies; ids must be unique."""
    policies = [load_policy(document) for document in documents]

    seen = set()
    for policy in policies:
        if policy.policy_id in seen:
            raise ConfigurationError(f"Duplicate policy id: {policy.policy_id}", details={"policy_id": policy.policy_id})
        seen.add(policy.policy_id)

    return policies


def parse_policies_yaml(text: str) -> List[Policy]:
    """Parse policies from YAML text."""
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid policy YAML: {e}")

    if loaded is None:
        return []
    if isinstance(loaded, Mapping):
        loaded = loaded.get("policies", [])
    if not isinstance(loaded, list):
        raise ConfigurationError("Policy YAML must be a list of policies or a mapping with a 'policies' list")

    policies = load_policies(loaded)
    logger.info("Policies loaded", count=len(policies))
    return policies


def load_policies_from_yaml(path: Union[str, Path]) -> List[Policy]:
    """Load policies from a YAML file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read policy file: {path}", details={"error": str(e)})
    return parse_policies_yaml(text)


class PolicySource:
    """Supplies the ordered policies for an evaluation request."""

    async def get_policies(self, context: PolicyContext) -> List[Policy]:
        raise NotImplementedError


class StaticPolicySource(PolicySource):
    """A fixed, ordered list of policies."""

    def __init__(self, policies: Iterable[Policy]):
        self._policies = list(policies)

    async def get_policies(self, context: PolicyContext) -> List[Policy]:
        return list(self._policies)


class YamlPolicySource(PolicySource):
    """Policies read from a YAML file, reloaded when the file changes."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._mtime: Optional[float] = None
        self._policies: List[Policy] = []

    def reload(self) -> List[Policy]:
        self._policies = load_policies_from_yaml(self.path)
        self._mtime = self.path.stat().st_mtime
        return self._policies

    async def get_policies(self, context: PolicyContext) -> List[Policy]:
        if self._mtime is None or self.path.stat().st_mtime != self._mtime:
            self.reload()
        return list(self._policies)
