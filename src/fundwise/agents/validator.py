"""Validator Agent – the only gate between a candidate answer and the caller.

Two stages, run in order:

1. **Structural** – the parsed candidate must match the answer schema for
   the selected shape exactly (strict types, no extra keys).  Any failure
   here short-circuits; business rules are not checked against a malformed
   object.
2. **Business rules** – only for structured answers with recommendations.
   Every violation is collected so a repair attempt can fix them all at once:

   • net new money (BUY − SELL) must fit inside the monthly surplus
   • BUY / SELL amounts must be positive, HOLD amounts non-negative
   • instrument categories must be allowed fund categories
   • no speculative instruments (stocks, crypto, derivatives, …)
   • execution must stay disabled

Pure and deterministic: no LLM, no I/O.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from ..models.artifact import Artifact, NarrativeAnswer, RecommendationItem, StructuredAnswer
from ..models.profile import FinancialProfile
from ..models.schemas import CandidateAnswer, ValidationOutcome
from .context import compute_derived_metrics

logger = logging.getLogger(__name__)

ALLOWED_CATEGORIES = frozenset(
    {"mutual_fund", "index_fund", "debt_fund", "liquid_fund", "elss"}
)

SPECULATIVE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"stock",
        r"share",
        r"crypto",
        r"bitcoin",
        r"ethereum",
        r"option",
        r"future",
        r"derivative",
        r"nifty\s*50\s*(call|put)",
        r"f\s*&\s*o",
    )
)


def _schema_errors(exc: ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        path = ".".join(str(p) for p in err["loc"]) or "root"
        errors.append(f"Schema error at {path}: {err['msg']}")
    return errors


def _speculative_match(text: str) -> str | None:
    for pattern in SPECULATIVE_PATTERNS:
        if pattern.search(text):
            return pattern.pattern
    return None


def check_business_rules(
    recommendations: list[RecommendationItem],
    profile: FinancialProfile,
) -> list[str]:
    """Return every business-rule violation in *recommendations*."""
    errors: list[str] = []
    surplus = compute_derived_metrics(profile).monthly_surplus

    buy = sum(r.amount for r in recommendations if r.action == "BUY")
    sell = sum(r.amount for r in recommendations if r.action == "SELL")
    net = buy - sell
    if net > surplus:
        errors.append(
            f"Net new investment (BUY ₹{buy:,.0f} - SELL ₹{sell:,.0f} = ₹{net:,.0f}) "
            f"exceeds monthly surplus (₹{surplus:,.0f})"
        )

    for i, rec in enumerate(recommendations):
        where = f"Recommendation {i + 1} ({rec.instrument.name})"

        if rec.action in ("BUY", "SELL") and rec.amount <= 0:
            errors.append(f"{where}: {rec.action} amount must be positive, got {rec.amount}")
        elif rec.action == "HOLD" and rec.amount < 0:
            errors.append(f"{where}: HOLD amount must not be negative, got {rec.amount}")

        if rec.instrument.category not in ALLOWED_CATEGORIES:
            errors.append(
                f"{where}: category '{rec.instrument.category}' is not allowed; "
                f"use one of {', '.join(sorted(ALLOWED_CATEGORIES))}"
            )

        for label, text in (("name", rec.instrument.name), ("rationale", rec.rationale)):
            hit = _speculative_match(text)
            if hit:
                errors.append(
                    f"{where}: speculative instrument detected in {label} "
                    f"(matched '{hit}')"
                )

        if rec.execution_enabled:
            errors.append(f"{where}: execution_enabled must be false")

    return errors


class ValidatorAgent:
    """Structural then business-rule validation of a candidate answer."""

    def validate(
        self,
        candidate: CandidateAnswer | Any,
        profile: FinancialProfile,
        needs_structured_answer: bool,
    ) -> ValidationOutcome:
        parsed = candidate.parsed if isinstance(candidate, CandidateAnswer) else candidate

        try:
            if needs_structured_answer:
                answer: Artifact = StructuredAnswer.model_validate(parsed)
            else:
                answer = NarrativeAnswer.model_validate(parsed).to_artifact()
        except ValidationError as exc:
            errors = _schema_errors(exc)
            logger.info("Candidate failed schema validation (%d errors)", len(errors))
            return ValidationOutcome(accepted=False, errors=errors)

        if needs_structured_answer and answer.recommendations:
            errors = check_business_rules(answer.recommendations, profile)
            if errors:
                logger.info("Candidate failed %d business rule(s)", len(errors))
                return ValidationOutcome(accepted=False, errors=errors)

        return ValidationOutcome(accepted=True, artifact=answer)
