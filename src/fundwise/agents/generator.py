"""Generator Agent – produce a candidate answer from profile + fund data.

A single prompt embeds:
  • the validated profile and its derived metrics
  • the grounding facts (or an explicit "no retrieval" marker)
  • the output-format instructions for the selected shape: the full
    structured answer, or narrative-only when no recommendations are needed

Repair attempts reuse the same prompt with the previous raw output and the
validator's error list appended; the model regenerates the whole answer.

The output is **untrusted**: the generator only guarantees it got back a JSON
object.  Empty or unparseable completions raise ``GenerationError`` and are
never retried here (retrying is the repair coordinator's job).

Earlier conversation turns, when given, sit between the system prompt and the
current prompt so follow-up questions keep their context.

``generate_stream`` is the streaming variant.  It also surfaces narrative text
as it arrives, via ``NarrativeScanner``.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Any, Callable

from ..config.settings import GENERATOR_MAX_TOKENS, GENERATOR_MODEL, REPAIR_MODEL
from ..models.profile import FinancialProfile
from ..models.schemas import (
    CandidateAnswer, GenerationInstructions, GroundingResult, RepairState,
)
from ..services.llm import create_client, parse_json_object
from .context import compute_derived_metrics, format_profile_for_prompt
from .grounder import format_grounding_for_prompt
from .narrative_parser import NarrativeScanner

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """The completion was empty or not a JSON object."""


class GenerationCancelled(RuntimeError):
    """The caller aborted a streaming generation."""


# ── Prompt templates ─────────────────────────────────────────────────────

DEFAULT_SYSTEM_PROMPT = """\
You are a sharp, honest and approachable personal finance guide for Indian
users.  Give clear, unbiased, well-reasoned advice on saving, investing,
insurance, retirement, taxes and financial goals.  Speak plainly: no jargon,
no sales talk, no preaching.  Be firm when needed and encouraging when
possible.

Equity rules: when recommending equity exposure, suggest ONLY index funds
(Nifty 50, Nifty Next 50, Nifty 500).  Debt funds, liquid funds and ELSS
(with tax-saving context) are also allowed.

Never recommend individual stocks, PMS or AIF, ULIPs or endowment plans,
crypto or derivatives, sectoral/thematic funds, or actively managed small
and mid cap funds.

Red flags: no emergency fund (flag it before suggesting investments), too
many EMIs (suggest reducing debt first), speculative behaviour (discourage
gently and offer safe alternatives), overlapping funds (suggest
consolidation).

End every answer with: "I'm not a registered financial advisor. Please
double-check with a SEBI-registered advisor before making big moves."
"""

STRUCTURED_OUTPUT_FORMAT = """\
OUTPUT FORMAT:
Output ONLY a JSON object with exactly these keys:
{
  "narrative": "2-4 friendly paragraphs addressed to the user, referencing their numbers, ending with the disclaimer",
  "intent": {
    "summary": "brief summary of what the user is asking",
    "query_type": "one of: portfolio_review, new_investment, rebalancing, redemption, tax_planning, emergency_fund, goal_based, general_advice"
  },
  "situation": {
    "description": "the user's situation relevant to the query",
    "data_basis": "one of: user_data, hypothetical, mixed",
    "scenario_type": "one of: data-backed, hypothetical, mixed"
  },
  "analysis": {
    "risk_assessment": "risk capacity given dependents, emergency fund and horizon",
    "expected_returns": "realistic expectations based on the fund data; never overpromise",
    "allocation_reasoning": "why this allocation given holdings and goals",
    "amount_calculation": "the exact arithmetic behind every amount"
  },
  "recommendations": [
    {
      "instrument": {
        "name": "EXACT fund name from the fund data",
        "category": "one of: mutual_fund, index_fund, debt_fund, liquid_fund, elss"
      },
      "action": "one of: BUY, SELL, HOLD",
      "rationale": "why this fund fits, citing its expense ratio and returns",
      "amount": <number in rupees>,
      "execution_enabled": false
    }
  ]
}

RULES:
1. Fund names MUST come from the fund data; never invent them.
2. Sum of BUY amounts minus sum of SELL amounts MUST NOT exceed the monthly surplus.
3. BUY and SELL amounts must be positive; HOLD amounts may be 0.
4. If the emergency fund gap is above 0, allocate to liquid funds FIRST.
5. "execution_enabled" is always false.
"""

NARRATIVE_OUTPUT_FORMAT = """\
OUTPUT FORMAT (no recommendations needed):
Output ONLY a JSON object with exactly these keys:
{
  "narrative": "a friendly, helpful answer referencing the user's situation, ending with the disclaimer",
  "intent": {
    "summary": "brief summary of what the user is asking",
    "query_type": "one of: portfolio_review, new_investment, rebalancing, redemption, tax_planning, emergency_fund, goal_based, general_advice"
  },
  "situation": {
    "description": "the user's situation relevant to the query",
    "data_basis": "one of: user_data, hypothetical, mixed",
    "scenario_type": "one of: data-backed, hypothetical, mixed"
  }
}
Do NOT include "analysis" or "recommendations".
"""


def _rupees(amount: float) -> str:
    return f"₹{amount:,.0f}"


def build_prompt(
    query: str,
    profile: FinancialProfile,
    grounding: GroundingResult | None,
    needs_structured_answer: bool,
    instructions: GenerationInstructions | None = None,
) -> str:
    """Assemble the user prompt for one generation attempt."""
    instructions = instructions or GenerationInstructions()
    m = compute_derived_metrics(profile)

    if needs_structured_answer:
        output_format = instructions.output_format or STRUCTURED_OUTPUT_FORMAT
        requirements = (
            "REQUIREMENTS:\n"
            "1. Calculate exact amounts and show the math in analysis.amount_calculation\n"
            "2. Use ONLY funds from the fund data above (when present)\n"
            "3. If an emergency fund gap exists, prioritise liquid funds"
        )
    else:
        output_format = NARRATIVE_OUTPUT_FORMAT
        requirements = (
            "REQUIREMENTS:\n"
            "1. Give conversational guidance referencing the user's numbers\n"
            "2. No recommendations array"
        )

    gap_note = "PRIORITY: address this first" if m.emergency_fund_gap > 0 else "covered"
    return (
        f"{format_profile_for_prompt(profile)}\n\n"
        f"{format_grounding_for_prompt(grounding)}\n\n"
        f'USER QUERY: "{query}"\n\n'
        "KEY NUMBERS:\n"
        f"- Monthly surplus available: {_rupees(m.monthly_surplus)}\n"
        f"- Emergency fund gap: {_rupees(m.emergency_fund_gap)} ({gap_note})\n"
        f"- Current portfolio value: {_rupees(m.total_current_value)}\n"
        f"- Portfolio returns: {m.return_percentage}%\n"
        f"- Allocation: equity {m.equity_percentage}%, debt {m.debt_percentage}%, "
        f"liquid {m.liquid_percentage}%\n"
        f"- Risk profile: {profile.risk_profile}\n"
        f"- Investment horizon: {profile.investment_horizon_years} years\n"
        f"- Dependents: {profile.dependents}\n\n"
        f"{requirements}\n\n"
        f"{output_format}\n"
        "Output ONLY valid JSON."
    )


def build_repair_prompt(base_prompt: str, repair: RepairState) -> str:
    errors = "\n".join(f"{i}. {e}" for i, e in enumerate(repair.last_errors, start=1))
    return (
        f"{base_prompt}\n\n"
        "YOUR PREVIOUS OUTPUT FAILED VALIDATION:\n"
        f"{errors}\n\n"
        "Previous output:\n"
        f"{repair.last_candidate_raw}\n\n"
        "Produce a corrected answer that fixes every error above.  Keep the tone, "
        "fix the data.  Output ONLY valid JSON."
    )


def estimate_tokens(text: str) -> int:
    """Rough token estimate (≈4 characters per token)."""
    return math.ceil(len(text) / 4)


def _parse_candidate(raw: str) -> Any:
    try:
        return parse_json_object(raw)
    except ValueError as exc:
        raise GenerationError(f"completion is not a JSON object: {exc}") from exc


class GeneratorAgent:
    """Turn (query, profile, grounding) into an untrusted ``CandidateAnswer``."""

    def __init__(
        self,
        llm: Any | None = None,
        model: str = GENERATOR_MODEL,
        repair_model: str = REPAIR_MODEL,
        max_tokens: int = GENERATOR_MAX_TOKENS,
    ):
        self._llm = llm or create_client()
        self.model = model
        self.repair_model = repair_model
        self.max_tokens = max_tokens

    def _messages(
        self,
        query: str,
        profile: FinancialProfile,
        grounding: GroundingResult | None,
        needs_structured_answer: bool,
        instructions: GenerationInstructions | None,
        repair: RepairState | None,
        history: list[dict[str, str]] | None = None,
    ) -> list[dict[str, str]]:
        prompt = build_prompt(query, profile, grounding, needs_structured_answer, instructions)
        if repair is not None:
            prompt = build_repair_prompt(prompt, repair)
        system = (instructions.system_prompt if instructions else None) or DEFAULT_SYSTEM_PROMPT
        return [
            {"role": "system", "content": system},
            *(history or []),
            {"role": "user", "content": prompt},
        ]

    def _call_kwargs(self, repair: RepairState | None) -> dict[str, Any]:
        return {
            "model": self.repair_model if repair else self.model,
            "temperature": 0.3 if repair else 0.5,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }

    def generate(
        self,
        query: str,
        profile: FinancialProfile,
        grounding: GroundingResult | None,
        needs_structured_answer: bool,
        instructions: GenerationInstructions | None = None,
        repair: RepairState | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> CandidateAnswer:
        messages = self._messages(
            query, profile, grounding, needs_structured_answer, instructions, repair, history,
        )
        logger.info(
            "Generating (%s, structured=%s, grounded=%s)",
            f"repair of attempt {repair.attempt}" if repair else "fresh",
            needs_structured_answer, grounding is not None,
        )
        resp = self._llm.chat.completions.create(messages=messages, **self._call_kwargs(repair))

        if not resp.choices:
            raise GenerationError("completion returned no choices")
        choice = resp.choices[0]
        raw = (choice.message.content or "").strip()
        if not raw:
            raise GenerationError("empty completion")

        usage = getattr(resp, "usage", None)
        tokens = getattr(usage, "completion_tokens", None)
        return CandidateAnswer(
            raw=raw,
            parsed=_parse_candidate(raw),
            finish_reason=choice.finish_reason or "stop",
            token_count=tokens if isinstance(tokens, int) else estimate_tokens(raw),
        )

    def generate_stream(
        self,
        query: str,
        profile: FinancialProfile,
        grounding: GroundingResult | None,
        needs_structured_answer: bool,
        on_text: Callable[[str], None],
        instructions: GenerationInstructions | None = None,
        cancel_event: threading.Event | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> CandidateAnswer:
        """Streamed first attempt; ``on_text`` receives narrative deltas."""
        messages = self._messages(
            query, profile, grounding, needs_structured_answer, instructions, None, history,
        )
        logger.info("Streaming generation (structured=%s)", needs_structured_answer)
        stream = self._llm.chat.completions.create(
            messages=messages, stream=True, **self._call_kwargs(None),
        )

        scanner = NarrativeScanner()
        finish_reason = "stop"
        try:
            for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    raise GenerationCancelled("generation cancelled by caller")
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                token = choice.delta.content if choice.delta else None
                if token:
                    delta = scanner.feed(token)
                    if delta:
                        on_text(delta)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()

        raw = scanner.raw.strip()
        logger.info(
            "Streaming complete: %d chars, %d narrative chars streamed",
            len(raw), len(scanner.confirmed),
        )
        if not raw:
            raise GenerationError("empty completion")
        return CandidateAnswer(
            raw=raw,
            parsed=_parse_candidate(raw),
            finish_reason=finish_reason,
            token_count=estimate_tokens(raw),
        )
