"""Context Validator – precondition gate for the caller's financial profile.

The profile is the single source of truth about the user's money.  It is
validated once per request, then injected into prompts as a structured block
(never merged textually into the query).  Derived metrics are recomputed on
demand from the validated profile; they are cheap and the profile may change
between requests.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ..models.profile import FinancialProfile

logger = logging.getLogger(__name__)

_EQUITY_CATEGORIES = ("equity", "elss", "index")

# Realistic starting point for playground experiments.
DEFAULT_PROFILE: dict[str, Any] = {
    "monthly_income": 150000,
    "monthly_expenses": 80000,
    "bank_balance": 500000,
    "holdings": [
        {
            "fund_name": "Parag Parikh Flexi Cap Fund Direct Growth",
            "category": "equity",
            "invested_amount": 200000,
            "current_value": 245000,
        },
        {
            "fund_name": "HDFC Index Fund Nifty 50 Plan Direct Growth",
            "category": "index",
            "invested_amount": 150000,
            "current_value": 172000,
        },
        {
            "fund_name": "ICICI Prudential Liquid Fund Direct Growth",
            "category": "liquid",
            "invested_amount": 100000,
            "current_value": 103500,
        },
        {
            "fund_name": "Mirae Asset Tax Saver Fund Direct Growth",
            "category": "elss",
            "invested_amount": 150000,
            "current_value": 168000,
        },
        {
            "fund_name": "SBI Magnum Gilt Fund Direct Growth",
            "category": "debt",
            "invested_amount": 100000,
            "current_value": 108000,
        },
    ],
    "risk_profile": "moderate",
    "investment_horizon_years": 10,
    "dependents": 2,
    "emergency_fund_months": 6,
}


@dataclass
class ProfileValidation:
    valid: bool
    profile: FinancialProfile | None = None
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DerivedMetrics:
    monthly_surplus: float
    total_invested: float
    total_current_value: float
    total_returns: float
    return_percentage: float
    required_emergency_fund: float
    current_emergency_coverage: float
    emergency_fund_gap: float
    equity_percentage: int
    debt_percentage: int
    liquid_percentage: int


def _format_error_location(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc) or "profile"


class ContextValidatorAgent:
    """Pure structural + range validation. No LLM, no retries."""

    def validate(self, raw_profile: Any) -> ProfileValidation:
        if isinstance(raw_profile, FinancialProfile):
            return ProfileValidation(valid=True, profile=raw_profile)
        try:
            profile = FinancialProfile.model_validate(raw_profile)
        except ValidationError as exc:
            errors = [
                f"{_format_error_location(err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ]
            logger.warning("Profile rejected with %d error(s): %s", len(errors), errors)
            return ProfileValidation(valid=False, errors=errors)

        logger.debug("Profile accepted (%d holdings)", len(profile.holdings))
        return ProfileValidation(valid=True, profile=profile)


def _pct(part: float, total: float) -> int:
    return round(part / total * 100) if total > 0 else 0


def compute_derived_metrics(profile: FinancialProfile) -> DerivedMetrics:
    """Surplus, portfolio totals, emergency-fund coverage and allocation."""
    surplus = profile.monthly_income - profile.monthly_expenses

    total_invested = sum(h.invested_amount for h in profile.holdings)
    total_current = sum(h.current_value for h in profile.holdings)
    total_returns = total_current - total_invested
    return_pct = (total_returns / total_invested * 100) if total_invested > 0 else 0.0

    def _value_of(*categories: str) -> float:
        return sum(h.current_value for h in profile.holdings if h.category in categories)

    equity = _value_of(*_EQUITY_CATEGORIES)
    debt = _value_of("debt")
    liquid = _value_of("liquid")
    allocated = equity + debt + liquid

    required = profile.monthly_expenses * profile.emergency_fund_months
    coverage = profile.bank_balance + liquid

    return DerivedMetrics(
        monthly_surplus=surplus,
        total_invested=total_invested,
        total_current_value=total_current,
        total_returns=total_returns,
        return_percentage=round(return_pct, 2),
        required_emergency_fund=required,
        current_emergency_coverage=coverage,
        emergency_fund_gap=max(0.0, required - coverage),
        equity_percentage=_pct(equity, allocated),
        debt_percentage=_pct(debt, allocated),
        liquid_percentage=_pct(liquid, allocated),
    )


def format_profile_for_prompt(profile: FinancialProfile) -> str:
    """Render the profile + metrics as a tagged JSON block for the LLM."""
    m = compute_derived_metrics(profile)
    block = {
        "income_expenses": {
            "monthly_income": profile.monthly_income,
            "monthly_expenses": profile.monthly_expenses,
            "monthly_surplus": m.monthly_surplus,
        },
        "bank_balance": profile.bank_balance,
        "portfolio": {
            "total_invested": m.total_invested,
            "current_value": m.total_current_value,
            "returns": m.total_returns,
            "return_percentage": f"{m.return_percentage}%",
            "holdings": [h.model_dump() for h in profile.holdings],
        },
        "asset_allocation": {
            "equity": f"{m.equity_percentage}%",
            "debt": f"{m.debt_percentage}%",
            "liquid": f"{m.liquid_percentage}%",
        },
        "risk_profile": profile.risk_profile,
        "investment_horizon_years": profile.investment_horizon_years,
        "dependents": profile.dependents,
        "emergency_fund": {
            "target_months": profile.emergency_fund_months,
            "required_amount": m.required_emergency_fund,
            "current_coverage": m.current_emergency_coverage,
            "gap": m.emergency_fund_gap,
        },
    }
    return (
        "<USER_FINANCIAL_CONTEXT>\n"
        f"{json.dumps(block, indent=2)}\n"
        "</USER_FINANCIAL_CONTEXT>\n\n"
        "CONSTRAINTS FOR RECOMMENDATIONS:\n"
        f"- Maximum net new money per month: ₹{m.monthly_surplus:,.0f}\n"
        "- Sum of BUY amounts minus sum of SELL amounts MUST NOT exceed the monthly surplus\n"
        "- Only recommend: mutual funds, index funds, debt funds, liquid funds, ELSS\n"
        "- NO individual stocks, crypto or derivatives"
    )
