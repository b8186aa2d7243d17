"""Caller-supplied financial profile."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

HoldingCategory = Literal["equity", "debt", "hybrid", "liquid", "index", "elss"]
RiskProfile = Literal["low", "moderate", "high"]


class Holding(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)

    fund_name: str = Field(min_length=1)
    category: HoldingCategory
    invested_amount: float = Field(gt=0)
    current_value: float = Field(gt=0)


class FinancialProfile(BaseModel):
    """Monthly cash flow, holdings and preferences of one user (rupees)."""

    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)

    monthly_income: float = Field(gt=0)
    monthly_expenses: float = Field(gt=0)
    bank_balance: float = Field(ge=0)
    holdings: list[Holding] = Field(default_factory=list)
    risk_profile: RiskProfile
    investment_horizon_years: int = Field(gt=0)
    dependents: int = Field(ge=0)
    emergency_fund_months: float = Field(ge=0)
