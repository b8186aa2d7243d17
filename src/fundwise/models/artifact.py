"""Answer schema the generator must produce.

Two shapes exist: the full structured answer (analysis + recommendations)
and the narrative-only answer used when the query does not call for a
BUY/SELL/HOLD table.  Validation is strict: no type coercion, no extra keys.

Category membership, amount signs and the execution flag are deliberately
typed loosely here; they are business rules and are reported by the
validator as itemised errors the repair loop can feed back.
"""

from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

QueryType = Literal[
    "portfolio_review",
    "new_investment",
    "rebalancing",
    "redemption",
    "tax_planning",
    "emergency_fund",
    "goal_based",
    "general_advice",
]

Action = Literal["BUY", "SELL", "HOLD"]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True, frozen=True, allow_inf_nan=False)


class IntentSummary(_Strict):
    summary: str
    query_type: QueryType


class Situation(_Strict):
    description: str
    data_basis: Literal["user_data", "hypothetical", "mixed"]
    scenario_type: Literal["data-backed", "hypothetical", "mixed"]


class Analysis(_Strict):
    risk_assessment: str
    expected_returns: str
    allocation_reasoning: str
    amount_calculation: str


class InstrumentRef(_Strict):
    name: str = Field(min_length=1)
    category: str


class RecommendationItem(_Strict):
    instrument: InstrumentRef
    action: Action
    rationale: str
    amount: Union[int, float]
    execution_enabled: bool


class Artifact(_Strict):
    """Accepted answer.  ``analysis`` is absent for narrative-only answers."""

    narrative: str = Field(min_length=1)
    intent: IntentSummary
    situation: Situation
    analysis: Analysis | None = None
    recommendations: list[RecommendationItem] = Field(default_factory=list)


class StructuredAnswer(Artifact):
    analysis: Analysis
    recommendations: list[RecommendationItem]


class NarrativeAnswer(_Strict):
    narrative: str = Field(min_length=1)
    intent: IntentSummary
    situation: Situation

    def to_artifact(self) -> Artifact:
        return Artifact(
            narrative=self.narrative,
            intent=self.intent,
            situation=self.situation,
        )
