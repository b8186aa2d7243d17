"""Tests for the Context Validator and derived metrics (pure logic)."""

import pytest
from src.fundwise.agents.context import (
    ContextValidatorAgent,
    compute_derived_metrics,
    format_profile_for_prompt,
)
from src.fundwise.models.profile import FinancialProfile


class TestContextValidator:
    def setup_method(self):
        self.validator = ContextValidatorAgent()

    def test_valid_profile(self, profile_dict):
        result = self.validator.validate(profile_dict)
        assert result.valid
        assert isinstance(result.profile, FinancialProfile)
        assert result.errors == []

    def test_accepts_model_instance(self, profile):
        assert self.validator.validate(profile).profile is profile

    def test_negative_income(self, profile_dict):
        profile_dict["monthly_income"] = -100
        result = self.validator.validate(profile_dict)
        assert not result.valid
        assert result.profile is None
        assert any(e.startswith("monthly_income:") for e in result.errors)

    @pytest.mark.parametrize("field", ["monthly_income", "bank_balance", "emergency_fund_months"])
    @pytest.mark.parametrize("value", [float("inf"), float("nan")])
    def test_non_finite_numbers_rejected(self, profile_dict, field, value):
        profile_dict[field] = value
        result = self.validator.validate(profile_dict)
        assert not result.valid
        assert any(e.startswith(f"{field}:") for e in result.errors)

    def test_non_finite_holding_value_rejected(self, profile_dict):
        profile_dict["holdings"][0]["current_value"] = float("inf")
        result = self.validator.validate(profile_dict)
        assert any(e.startswith("holdings.0.current_value:") for e in result.errors)

    def test_nested_error_path(self, profile_dict):
        profile_dict["holdings"][1]["category"] = "crypto"
        result = self.validator.validate(profile_dict)
        assert any(e.startswith("holdings.1.category:") for e in result.errors)

    def test_unknown_field_rejected(self, profile_dict):
        profile_dict["salary"] = 1
        assert not self.validator.validate(profile_dict).valid

    def test_missing_required_field(self, profile_dict):
        del profile_dict["risk_profile"]
        result = self.validator.validate(profile_dict)
        assert any(e.startswith("risk_profile:") for e in result.errors)

    def test_not_a_mapping(self):
        assert not self.validator.validate("not a profile").valid


class TestDerivedMetrics:
    def test_default_profile(self, profile):
        m = compute_derived_metrics(profile)
        assert m.monthly_surplus == 70000
        assert m.total_invested == 700000
        assert m.total_current_value == 796500
        assert m.total_returns == 96500
        assert m.return_percentage == pytest.approx(13.79)
        assert m.required_emergency_fund == 480000
        assert m.current_emergency_coverage == 500000 + 103500
        assert m.emergency_fund_gap == 0

    def test_allocation_sums_near_100(self, profile):
        m = compute_derived_metrics(profile)
        assert 99 <= m.equity_percentage + m.debt_percentage + m.liquid_percentage <= 101
        assert m.equity_percentage > m.debt_percentage

    def test_emergency_gap(self, profile_dict):
        profile_dict["bank_balance"] = 0
        profile_dict["holdings"] = []
        m = compute_derived_metrics(FinancialProfile.model_validate(profile_dict))
        assert m.emergency_fund_gap == 480000
        assert m.equity_percentage == 0
        assert m.return_percentage == 0


class TestFormatProfile:
    def test_tagged_block_with_constraints(self, profile):
        text = format_profile_for_prompt(profile)
        assert text.startswith("<USER_FINANCIAL_CONTEXT>")
        assert "</USER_FINANCIAL_CONTEXT>" in text
        assert "₹70,000" in text
        assert "NO individual stocks" in text
