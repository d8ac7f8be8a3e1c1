"""
Unit tests for applying masking decisions.
"""

import hashlib

import pytest

from service_policy.app.policy import builders
from service_policy.app.policy.aggregator import aggregate
from service_policy.app.policy.evaluators import evaluate_data_masking
from service_policy.app.policy.masking import REDACTED, apply_masking, mask_from_decision, mask_value
from service_policy.app.policy.models import MaskingType, PolicyContext


class TestMaskValue:
    """Test cases for mask_value."""

    def test_full(self):
        """Test full masking redacts the value."""
        assert mask_value("123-45-6789", MaskingType.FULL) == REDACTED

    def test_partial(self):
        """Test partial masking keeps the last four characters."""
        assert mask_value("4111111111111111", MaskingType.PARTIAL) == "************1111"
        assert mask_value("abc", MaskingType.PARTIAL) == "***"

    def test_hash(self):
        """Test hash masking is a stable digest."""
        expected = hashlib.sha256(b"jane@example.com").hexdigest()
        assert mask_value("jane@example.com", MaskingType.HASH) == expected

    def test_non_string_and_none(self):
        """Test numbers are masked as text and None is kept."""
        assert mask_value(123456, "partial") == "**3456"
        assert mask_value(None, MaskingType.FULL) is None


class TestApplyMasking:
    """Test cases for apply_masking."""

    @pytest.fixture
    def payload(self):
        """Create nested payload."""
        return {
            "ssn": "123-45-6789",
            "customer": {"email": "jane@example.com", "name": "Jane"},
            "cards": [{"number": "4111111111111111"}, {"number": "5500000000000004"}],
        }

    def test_masks_copy(self, payload):
        """Test the input is left untouched."""
        masked = apply_masking(payload, ["data.ssn", "customer.email"], MaskingType.FULL)

        assert masked["ssn"] == REDACTED
        assert masked["customer"]["email"] == REDACTED
        assert masked["customer"]["name"] == "Jane"
        assert payload["ssn"] == "123-45-6789"

    def test_lists(self, payload):
        """Test paths continue through lists."""
        masked = apply_masking(payload, ["cards.number"], MaskingType.PARTIAL)

        assert [card["number"][-4:] for card in masked["cards"]] == ["1111", "0004"]
        assert all(card["number"].startswith("****") for card in masked["cards"])

    def test_missing_fields_ignored(self, payload):
        """Test missing paths are ignored."""
        assert apply_masking(payload, ["data.unknown.deeper"], MaskingType.FULL) == payload

    def test_non_structured(self):
        """Test scalar payloads are returned unchanged."""
        assert apply_masking("plain text", ["data.ssn"], MaskingType.FULL) == "plain text"

    def test_context_data(self, payload):
        """Test a context's read-only data is masked into plain containers."""
        context = PolicyContext(data=payload)

        masked = apply_masking(context.data, ["data.ssn", "cards.number"], MaskingType.FULL)

        assert isinstance(masked, dict)
        assert masked["ssn"] == REDACTED
        assert masked["cards"] == [{"number": REDACTED}, {"number": REDACTED}]
        assert context.data["ssn"] == "123-45-6789"


class TestMaskFromDecision:
    """Test cases for mask_from_decision."""

    @pytest.fixture
    def policy(self):
        return builders.data_masking("mask-ssn").fields("data.ssn").masking(MaskingType.FULL).build()

    def test_single_decision(self, policy):
        """Test a single masking decision."""
        data = {"ssn": "123-45-6789", "name": "Jane"}
        decision = evaluate_data_masking(policy, PolicyContext(data=data))

        assert mask_from_decision(data, decision) == {"ssn": REDACTED, "name": "Jane"}

    def test_aggregate_decision(self, policy):
        """Test masking instructions nested in an aggregate decision."""
        other = builders.data_masking("mask-email").fields("data.email").masking(MaskingType.HASH).build()
        data = {"ssn": "123-45-6789", "email": "jane@example.com"}
        context = PolicyContext(data=data)
        combined = aggregate([
            ("mask-ssn", evaluate_data_masking(policy, context)),
            ("mask-email", evaluate_data_masking(other, context)),
        ])

        masked = mask_from_decision(data, combined)
        only_ssn = mask_from_decision(data, combined, policy_id="mask-ssn")

        assert masked["ssn"] == REDACTED
        assert masked["email"] == hashlib.sha256(b"jane@example.com").hexdigest()
        assert only_ssn["email"] == "jane@example.com"

    def test_no_instructions(self):
        """Test decisions without masking leave data unchanged."""
        decision = aggregate([])
        assert mask_from_decision({"a": 1}, decision) == {"a": 1}
