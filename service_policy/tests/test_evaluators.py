"""
Unit tests for per-kind policy evaluators.
"""

from types import SimpleNamespace

import pytest

from shared.errors import ConfigurationError
from service_policy.app.policy import builders
from service_policy.app.policy.evaluators import (
    content_as_text,
    evaluate_abac,
    evaluate_compliance,
    evaluate_content_filter,
    evaluate_data_masking,
    evaluate_fraud_prevention,
    evaluate_rate_limit,
    evaluate_rbac,
    get_evaluator,
    match_pattern,
    rate_limit_scope_key,
)
from service_policy.app.policy.models import (
    ConditionOperator,
    ContentAction,
    MaskingType,
    PolicyContext,
    SuspicionAction,
)


class TestMatchPattern:
    """Test cases for wildcard matching."""

    def test_wildcard(self):
        """Test the bare wildcard matches anything, even missing values."""
        assert match_pattern("users", "*")
        assert match_pattern(None, "*")

    def test_exact(self):
        """Test patterns without wildcards match exactly."""
        assert match_pattern("users", "users")
        assert not match_pattern("users/1", "users")

    def test_glob(self):
        """Test embedded wildcards."""
        assert match_pattern("users/42", "users/*")
        assert match_pattern("eu.reports.q1", "eu.*.q1")
        assert not match_pattern("accounts/42", "users/*")
        assert not match_pattern("eu-reports-q1", "eu.*.q1")


class TestRBACEvaluator:
    """Test cases for role-based evaluation."""

    def test_admin_wildcards_allow(self):
        """Test admin with wildcard resource and action is allowed."""
        policy = builders.rbac("admin").role("admin").resource("*").action("*").build()
        context = PolicyContext(subject={"role": "admin"}, resource={"name": "users"}, action="read")

        decision = evaluate_rbac(policy, context)

        assert decision.allowed is True
        assert decision.reason == "Access granted"
        assert decision.applied_policies == ["admin"]

    def test_action_mismatch(self):
        """Test a read-only policy denies writes."""
        policy = builders.rbac("readonly").role("user").resource("*").action("read").build()
        context = PolicyContext(subject={"role": "user"}, resource={"name": "users"}, action="write")

        decision = evaluate_rbac(policy, context)

        assert decision.allowed is False
        assert "Action mismatch" in decision.reason

    def test_role_mismatch(self):
        """Test a different role is denied."""
        policy = builders.rbac("admin").role("admin").build()
        decision = evaluate_rbac(policy, PolicyContext(subject={"role": "user"}, action="read"))

        assert decision.allowed is False
        assert decision.reason == "Role mismatch: expected admin, got user"

    def test_missing_role(self):
        """Test a subject without a role is denied."""
        policy = builders.rbac("admin").role("admin").build()
        decision = evaluate_rbac(policy, PolicyContext(action="read"))

        assert decision.allowed is False
        assert "Role mismatch" in decision.reason

    def test_role_list(self):
        """Test subjects carrying several roles."""
        policy = builders.rbac("analyst").role("analyst").build()
        context = PolicyContext(subject={"role": ["user", "analyst"]}, action="read")

        assert evaluate_rbac(policy, context).allowed is True

    def test_resource_pattern(self):
        """Test resource glob patterns."""
        policy = builders.rbac("users").role("user").resource("users/*").build()

        allowed = evaluate_rbac(policy, PolicyContext(subject={"role": "user"}, resource={"name": "users/1"}))
        denied = evaluate_rbac(policy, PolicyContext(subject={"role": "user"}, resource={"name": "billing/1"}))

        assert allowed.allowed is True
        assert denied.allowed is False
        assert denied.reason.startswith("Resource mismatch")

    def test_condition_failed(self):
        """Test a failing condition denies with its description."""
        policy = (
            builders.rbac("eu-admin")
            .role("admin")
            .when("subject.region", ConditionOperator.EQ, "eu")
            .build()
        )
        decision = evaluate_rbac(policy, PolicyContext(subject={"role": "admin", "region": "us"}))

        assert decision.allowed is False
        assert decision.reason == "Condition failed: subject.region eq eu"


class TestABACEvaluator:
    """Test cases for attribute-based evaluation."""

    @pytest.fixture
    def policy(self):
        """Create ABAC policy."""
        return (
            builders.abac("finance-reports")
            .subject_attr("department", "finance")
            .resource_attr("classification", "internal")
            .when("subject.clearance", ConditionOperator.GTE, 2)
            .build()
        )

    def test_all_match(self, policy):
        """Test matching attributes and conditions allow."""
        context = PolicyContext(
            subject={"department": "finance", "clearance": 3},
            resource={"classification": "internal"},
        )
        decision = evaluate_abac(policy, context)

        assert decision.allowed is True
        assert decision.applied_policies == ["finance-reports"]

    def test_subject_mismatch(self, policy):
        """Test a mismatching subject attribute names the key."""
        context = PolicyContext(subject={"department": "hr", "clearance": 3}, resource={"classification": "internal"})
        decision = evaluate_abac(policy, context)

        assert decision.allowed is False
        assert decision.reason == "Subject attribute mismatch: department"

    def test_missing_resource_attribute(self, policy):
        """Test a missing resource attribute is a mismatch."""
        context = PolicyContext(subject={"department": "finance", "clearance": 3})
        decision = evaluate_abac(policy, context)

        assert decision.allowed is False
        assert decision.reason == "Resource attribute mismatch: classification"

    def test_strict_attribute_types(self):
        """Test attributes are compared without type coercion."""
        policy = builders.abac("level").subject_attr("level", 1).build()

        assert evaluate_abac(policy, PolicyContext(subject={"level": 1})).allowed is True
        assert evaluate_abac(policy, PolicyContext(subject={"level": "1"})).allowed is False
        assert evaluate_abac(policy, PolicyContext(subject={"level": True})).allowed is False

    def test_condition_failure(self, policy):
        """Test conditions are checked after attributes."""
        context = PolicyContext(
            subject={"department": "finance", "clearance": 1},
            resource={"classification": "internal"},
        )
        decision = evaluate_abac(policy, context)

        assert decision.allowed is False
        assert decision.reason.startswith("Condition failed: subject.clearance gte 2")


class TestContentFilterEvaluator:
    """Test cases for content filtering."""

    def test_keyword_blocks(self):
        """Test a keyword match with Deny blocks."""
        policy = builders.content_filter("profanity").keyword("badword").on_match(ContentAction.DENY).build()
        decision = evaluate_content_filter(policy, PolicyContext(data="contains a badword"))

        assert decision.allowed is False
        assert "Content blocked" in decision.reason
        assert decision.metadata["matched_filter"]["pattern"] == "badword"

    def test_keyword_case_insensitive(self):
        """Test keywords ignore case by default."""
        policy = builders.content_filter("profanity").keyword("badword").build()

        assert evaluate_content_filter(policy, PolicyContext(data="BADWORD!")).allowed is False

    def test_keyword_case_sensitive(self):
        """Test case sensitive keywords."""
        policy = builders.content_filter("profanity").keyword("Secret", case_sensitive=True).build()

        assert evaluate_content_filter(policy, PolicyContext(data="secret")).allowed is True
        assert evaluate_content_filter(policy, PolicyContext(data="Secret")).allowed is False

    def test_flag_allows(self):
        """Test Flag allows but reports the match."""
        policy = builders.content_filter("emails").email().on_match(ContentAction.FLAG).build()
        decision = evaluate_content_filter(policy, PolicyContext(data="write to jane@example.com"))

        assert decision.allowed is True
        assert "Content flagged" in decision.reason
        assert decision.metadata["action"] == "flag"

    def test_no_match(self):
        """Test clean content is allowed."""
        policy = builders.content_filter("pii").email().phone().url().build()
        decision = evaluate_content_filter(policy, PolicyContext(data="nothing to see"))

        assert decision.allowed is True
        assert decision.reason == "Content allowed"
        assert decision.metadata == {}

    def test_phone_and_url(self):
        """Test built-in phone and URL detectors."""
        phone = builders.content_filter("phone").phone().build()
        url = builders.content_filter("url").url().build()

        assert evaluate_content_filter(phone, PolicyContext(data="call 555-123-4567")).allowed is False
        assert evaluate_content_filter(url, PolicyContext(data="see https://example.com/a")).allowed is False

    def test_structured_data(self):
        """Test filters run over structured payloads."""
        policy = builders.content_filter("emails").email().build()
        data = {"message": {"to": "jane@example.com"}}

        assert evaluate_content_filter(policy, PolicyContext(data=data)).allowed is False

    def test_missing_data(self):
        """Test absent data matches nothing."""
        policy = builders.content_filter("profanity").keyword("badword").build()

        assert evaluate_content_filter(policy, PolicyContext()).allowed is True

    def test_content_as_text(self):
        """Test payload coercion."""
        assert content_as_text(None) == ""
        assert content_as_text(b"bytes") == "bytes"
        assert content_as_text({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
        assert content_as_text(42) == "42"
        frozen = PolicyContext(data={"b": [1, 2], "a": {"c": 3}}).data
        assert content_as_text(frozen) == '{"a": {"c": 3}, "b": [1, 2]}'


class TestRateLimitEvaluator:
    """Test cases for rate limit forwarding."""

    def test_forward_metadata(self):
        """Test the decision carries what the store needs."""
        policy = builders.rate_limit("api").limit(100, 60).scope("subject.id").build()
        decision = evaluate_rate_limit(policy, PolicyContext(subject={"id": "user-1"}))

        assert decision.allowed is True
        assert decision.metadata == {
            "limit": 100,
            "window": 60,
            "scope": "subject.id",
            "scope_key": "api:user-1",
            "on_exceed_action": "deny",
        }

    def test_anonymous_scope(self):
        """Test unresolvable scopes share the anonymous bucket."""
        policy = builders.rate_limit("api").limit(10, 1).build()

        assert rate_limit_scope_key(policy, PolicyContext()) == "api:anonymous"


class TestDataMaskingEvaluator:
    """Test cases for data masking."""

    def test_masking_applied(self):
        """Test masking metadata is emitted."""
        policy = builders.data_masking("mask").fields("data.ssn").masking(MaskingType.PARTIAL).build()
        decision = evaluate_data_masking(policy, PolicyContext(data={"ssn": "123-45-6789"}))

        assert decision.allowed is True
        assert decision.reason == "Data masking applied"
        assert decision.metadata == {"fields": ["data.ssn"], "masking_type": "partial"}

    def test_conditions_not_met(self):
        """Test masking is skipped but still allowed when conditions fail."""
        policy = (
            builders.data_masking("mask")
            .fields("data.ssn")
            .when("subject.role", ConditionOperator.NE, "admin")
            .build()
        )
        decision = evaluate_data_masking(policy, PolicyContext(subject={"role": "admin"}))

        assert decision.allowed is True
        assert decision.reason == "Masking conditions not met"
        assert decision.metadata == {}


class TestFraudPreventionEvaluator:
    """Test cases for fraud scoring."""

    def _policy(self, action=SuspicionAction.DENY, min_score=1.0):
        return (
            builders.fraud_prevention("fraud")
            .signal("velocity", 0.4, 2.0)
            .signal("geo", 0.1, 1.0, attribute="data.geo_risk")
            .min_score(min_score)
            .on_suspicion(action)
            .build()
        )

    def test_within_threshold(self):
        """Test a low score is allowed."""
        decision = evaluate_fraud_prevention(self._policy(), PolicyContext())

        assert decision.allowed is True
        assert decision.metadata["fraud_score"] == pytest.approx(0.9)
        assert decision.reason == "Risk score within threshold"

    def test_live_signal_deny(self):
        """Test a live attribute value pushes the score over the threshold."""
        decision = evaluate_fraud_prevention(self._policy(), PolicyContext(data={"geo_risk": 0.5}))

        assert decision.allowed is False
        assert decision.metadata["fraud_score"] == pytest.approx(1.3)
        assert decision.metadata["action"] == "deny"
        assert decision.reason.startswith("Fraud risk detected: score 1.30 >= threshold 1.0")

    def test_threshold_is_inclusive(self):
        """Test a score equal to the threshold is suspicious."""
        decision = evaluate_fraud_prevention(self._policy(min_score=0.5), PolicyContext())
        assert decision.allowed is False

    @pytest.mark.parametrize("action", [SuspicionAction.FLAG, SuspicionAction.CHALLENGE])
    def test_non_deny_actions_allow(self, action):
        """Test Flag and Challenge allow with the action in metadata."""
        decision = evaluate_fraud_prevention(self._policy(action=action, min_score=0.1), PolicyContext())

        assert decision.allowed is True
        assert decision.metadata["action"] == action.value

    def test_non_numeric_live_value_ignored(self):
        """Test a non-numeric live value falls back to the static value."""
        decision = evaluate_fraud_prevention(self._policy(), PolicyContext(data={"geo_risk": "high"}))
        assert decision.metadata["fraud_score"] == pytest.approx(0.9)


class TestComplianceEvaluator:
    """Test cases for compliance requirements."""

    @pytest.fixture
    def policy(self):
        """Create GDPR compliance policy."""
        return (
            builders.compliance("gdpr")
            .framework("GDPR")
            .audit()
            .requirement(
                "consent",
                conditions=[builders.condition("data.consent.given", ConditionOperator.EQ, True)],
            )
            .requirement(
                "export-region",
                applies_to=["export"],
                conditions=[builders.condition("resource.region", ConditionOperator.EQ, "eu")],
            )
            .build()
        )

    def test_consent_missing(self, policy):
        """Test a failed requirement denies."""
        decision = evaluate_compliance(policy, PolicyContext(action="process", data={"consent": {"given": False}}))

        assert decision.allowed is False
        assert "Compliance requirement failed" in decision.reason
        assert decision.metadata["failed_requirements"] == ["consent"]
        assert decision.metadata["evaluated_requirements"] == ["consent"]

    def test_all_met(self, policy):
        """Test satisfied requirements allow."""
        decision = evaluate_compliance(policy, PolicyContext(action="process", data={"consent": {"given": True}}))

        assert decision.allowed is True
        assert decision.reason == "All compliance requirements met"
        assert decision.metadata["framework"] == "GDPR"
        assert decision.metadata["audit_required"] is True

    def test_applies_to_action(self, policy):
        """Test scoped requirements only apply to matching actions."""
        context = PolicyContext(action="export", resource={"region": "us"}, data={"consent": {"given": True}})
        decision = evaluate_compliance(policy, context)

        assert decision.allowed is False
        assert decision.metadata["evaluated_requirements"] == ["consent", "export-region"]
        assert decision.metadata["failed_requirements"] == ["export-region"]
        assert decision.metadata["failures"]["export-region"] == "resource.region eq eu"


class TestGetEvaluator:
    """Test cases for evaluator dispatch."""

    def test_dispatch(self):
        """Test dispatch by kind."""
        policy = builders.rbac("p").role("admin").build()
        assert get_evaluator(policy) is evaluate_rbac

    def test_unknown_kind(self):
        """Test an unknown kind is a configuration error."""
        with pytest.raises(ConfigurationError) as exc:
            get_evaluator(SimpleNamespace(policy_id="x", kind="workflow"))
        assert exc.value.message == "Unknown policy kind: workflow"
