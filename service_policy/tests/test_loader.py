"""
Unit tests for policy documents and policy sources.
"""

import os

import pytest

from shared.errors import ConfigurationError
from service_policy.app.policy.loader import (
    StaticPolicySource,
    YamlPolicySource,
    load_policies,
    load_policies_from_yaml,
    load_policy,
    parse_policies_yaml,
)
from service_policy.app.policy.models import (
    ABACPolicy,
    CompliancePolicy,
    ConditionOperator,
    ContentAction,
    ContentFilterPolicy,
    DataMaskingPolicy,
    FilterType,
    FraudPreventionPolicy,
    MaskingType,
    PolicyContext,
    PolicyStatus,
    RBACPolicy,
    RateLimitPolicy,
    SuspicionAction,
)

POLICIES_YAML = """
policies:
  - id: admin-all
    kind: rbac
    rules:
      role: admin
  - id: finance-only
    kind: abac
    status: inactive
    rules:
      subject_attrs: {department: finance}
      conditions:
        - {attribute: subject.clearance, operator: gte, value: 2}
  - id: profanity
    kind: content_filter
    rules:
      filters:
        - {type: keyword, pattern: badword}
        - {type: email}
      on_match_action: Flag
  - id: api-limit
    kind: RateLimit
    rules:
      limit: 100
      window_seconds: 60
      scope: subject.tenant
  - id: mask-pii
    kind: data_masking
    rules:
      fields: [data.ssn, data.card]
      masking_type: partial
  - id: fraud
    kind: fraud_prevention
    rules:
      risk_level: high
      min_score: 0.7
      on_suspicion_action: challenge
      signals:
        - {name: velocity, value: 0.2, weight: 2}
        - {name: geo, attribute: data.geo_risk}
  - id: gdpr
    name: GDPR consent
    kind: compliance
    rules:
      framework: GDPR
      audit_required: true
      requirements:
        - id: consent
          applies_to: [process, export]
          conditions:
            - {attribute: data.consent.given, operator: eq, value: true}
"""


class TestLoadPolicy:
    """Test cases for single documents."""

    def test_rbac_document(self):
        """Test an RBAC document with defaults."""
        policy = load_policy({"id": "admin-all", "kind": "rbac", "rules": {"role": "admin"}})

        assert isinstance(policy, RBACPolicy)
        assert policy.resource == "*"
        assert policy.status == PolicyStatus.ACTIVE

    def test_missing_required_rule(self):
        """Test a missing kind-specific field is a configuration error."""
        with pytest.raises(ConfigurationError) as exc:
            load_policy({"id": "no-role", "kind": "rbac", "rules": {}})

        assert exc.value.details["policy_id"] == "no-role"
        assert exc.value.details["errors"]

    def test_unknown_kind(self):
        """Test an unknown kind is rejected."""
        with pytest.raises(ConfigurationError):
            load_policy({"id": "x", "kind": "workflow", "rules": {}})

    def test_unknown_rule_field(self):
        """Test unexpected rule fields are rejected."""
        with pytest.raises(ConfigurationError):
            load_policy({"id": "x", "kind": "rbac", "rules": {"role": "admin", "roles": ["a"]}})

    def test_model_validation_surfaces(self):
        """Test validation in the policy model itself surfaces unchanged."""
        with pytest.raises(ConfigurationError) as exc:
            load_policy({"id": "x", "kind": "rate_limit", "rules": {"limit": 0, "window_seconds": 60}})

        assert "positive integer" in exc.value.message

    def test_duplicate_ids(self):
        """Test duplicate ids are rejected."""
        document = {"id": "dup", "kind": "rbac", "rules": {"role": "admin"}}

        with pytest.raises(ConfigurationError) as exc:
            load_policies([document, document])
        assert exc.value.message == "Duplicate policy id: dup"


class TestYamlLoading:
    """Test cases for YAML documents."""

    def test_parse_all_kinds(self):
        """Test every policy kind loads from YAML, in order."""
        policies = parse_policies_yaml(POLICIES_YAML)

        assert [p.policy_id for p in policies] == [
            "admin-all", "finance-only", "profanity", "api-limit", "mask-pii", "fraud", "gdpr",
        ]
        assert [type(p) for p in policies] == [
            RBACPolicy, ABACPolicy, ContentFilterPolicy, RateLimitPolicy,
            DataMaskingPolicy, FraudPreventionPolicy, CompliancePolicy,
        ]

        abac = policies[1]
        assert abac.status == PolicyStatus.INACTIVE
        assert abac.conditions[0].operator == ConditionOperator.GTE

        content = policies[2]
        assert [f.type for f in content.filters] == [FilterType.KEYWORD, FilterType.EMAIL]
        assert content.on_match_action == ContentAction.FLAG

        assert policies[3].scope == "subject.tenant"
        assert policies[4].masking_type == MaskingType.PARTIAL

        fraud = policies[5]
        assert fraud.on_suspicion_action == SuspicionAction.CHALLENGE
        assert fraud.signals[1].attribute == "data.geo_risk"

        gdpr = policies[6]
        assert gdpr.name == "GDPR consent"
        assert gdpr.requirements[0].applies_to == ("process", "export")

    def test_plain_list(self):
        """Test a top-level list of documents."""
        policies = parse_policies_yaml("- {id: a, kind: rbac, rules: {role: admin}}\n")
        assert [p.policy_id for p in policies] == ["a"]

    def test_empty_document(self):
        """Test an empty document yields no policies."""
        assert parse_policies_yaml("") == []

    def test_invalid_yaml(self):
        """Test malformed YAML is a configuration error."""
        with pytest.raises(ConfigurationError):
            parse_policies_yaml("policies: [unclosed")

    def test_wrong_shape(self):
        """Test a scalar document is rejected."""
        with pytest.raises(ConfigurationError):
            parse_policies_yaml("just a string")

    def test_load_from_file(self, tmp_path):
        """Test loading from a file path."""
        path = tmp_path / "policies.yaml"
        path.write_text(POLICIES_YAML, encoding="utf-8")

        assert len(load_policies_from_yaml(path)) == 7

    def test_missing_file(self, tmp_path):
        """Test a missing file is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_policies_from_yaml(tmp_path / "missing.yaml")


class TestPolicySources:
    """Test cases for policy sources."""

    @pytest.mark.asyncio
    async def test_static_source(self):
        """Test the static source returns a copy in order."""
        policies = parse_policies_yaml(POLICIES_YAML)
        source = StaticPolicySource(policies)

        returned = await source.get_policies(PolicyContext())
        returned.clear()

        assert [p.policy_id for p in await source.get_policies(PolicyContext())] == [p.policy_id for p in policies]

    @pytest.mark.asyncio
    async def test_yaml_source_reloads(self, tmp_path):
        """Test the YAML source picks up file changes."""
        path = tmp_path / "policies.yaml"
        path.write_text("- {id: a, kind: rbac, rules: {role: admin}}\n", encoding="utf-8")
        source = YamlPolicySource(path)

        first = await source.get_policies(PolicyContext())

        path.write_text(
            "- {id: a, kind: rbac, rules: {role: admin}}\n- {id: b, kind: rbac, rules: {role: user}}\n",
            encoding="utf-8",
        )
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        second = await source.get_policies(PolicyContext())

        assert [p.policy_id for p in first] == ["a"]
        assert [p.policy_id for p in second] == ["a", "b"]
