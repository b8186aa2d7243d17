"""Classifier Agent – domain gate in front of the pipeline.

One JSON-mode completion decides whether the query is about Indian personal
finance and which downstream work it needs (grounding, structured
recommendations).  Only ``in_domain`` gates; confidence is advisory.

The classifier **fails open**: if the call raises, or the reply cannot be
parsed, the query is let through with a low confidence.  The outcome's status
says which of the two happened so callers and tests can tell a degraded
verdict from a real one.
"""

from __future__ import annotations

import logging
from typing import Any

from ..config.settings import CLASSIFIER_MODEL
from ..models.schemas import ClassificationResult, Outcome
from ..services.llm import create_client, message_text, parse_json_object

logger = logging.getLogger(__name__)

_FAIL_OPEN_CONFIDENCE = 0.5

_CLASSIFY_PROMPT = """\
You are the query classifier for an Indian personal finance assistant.
Decide whether the user's query is something the assistant can help with.

ACCEPT queries about:
- Indian mutual funds (equity, debt, hybrid, liquid, index funds, ELSS)
- SIPs: starting, modifying or stopping
- Portfolio review, rebalancing, asset allocation
- Tax-saving investments (Section 80C, ELSS)
- Emergency fund planning and goal-based investing
- Expense ratios, NAV, returns, AUM; FD, RD, PPF, EPF, NPS
- General personal finance questions in an Indian context

REJECT queries about:
- Individual stock picking or trading tips
- Cryptocurrency, NFTs, derivatives (options, futures, F&O), forex
- Non-Indian financial products (401k, IRA, ...)
- Get-rich-quick schemes or speculation
- Unrelated topics (weather, recipes, movies, sports, ...)

Be lenient: if the query is even tangentially about personal finance in an
Indian context, accept it.

Also decide:
- needs_grounding: true when answering requires current fund data
  (names, returns, expense ratios), false for conceptual questions.
- needs_structured_answer: true when the user wants concrete BUY/SELL/HOLD
  recommendations with amounts, false for explanations or general advice.

Return ONLY valid JSON (no markdown fences):
{
  "in_domain": <bool>,
  "confidence": <number 0.0-1.0>,
  "reason": "<1-2 sentences>",
  "needs_grounding": <bool>,
  "needs_structured_answer": <bool>
}
"""


def _fail_open(reason: str) -> ClassificationResult:
    return ClassificationResult(
        in_domain=True,
        confidence=_FAIL_OPEN_CONFIDENCE,
        reason=f"Classification unavailable ({reason}); allowing query to proceed.",
        needs_grounding=True,
        needs_structured_answer=True,
    )


def _coerce(data: dict[str, Any]) -> ClassificationResult:
    """Build a result from the parsed reply; raises ValueError on bad shape."""
    in_domain = data.get("in_domain")
    if not isinstance(in_domain, bool):
        raise ValueError("'in_domain' must be a boolean")

    confidence = data.get("confidence", 0.0)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValueError("'confidence' must be a number")
    confidence = min(1.0, max(0.0, float(confidence)))

    def _flag(key: str) -> bool:
        value = data.get(key, True)
        return value if isinstance(value, bool) else True

    return ClassificationResult(
        in_domain=in_domain,
        confidence=confidence,
        reason=str(data.get("reason", "")),
        needs_grounding=_flag("needs_grounding"),
        needs_structured_answer=_flag("needs_structured_answer"),
    )


class ClassifierAgent:
    """Single capability call; no side effects beyond the call itself."""

    def __init__(self, llm: Any | None = None, model: str = CLASSIFIER_MODEL):
        self._llm = llm or create_client()
        self.model = model

    def classify(self, query: str) -> Outcome[ClassificationResult]:
        try:
            resp = self._llm.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _CLASSIFY_PROMPT},
                    {"role": "user", "content": query},
                ],
                temperature=0,
                max_tokens=200,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            logger.warning("Classifier call failed, failing open: %s", exc)
            return Outcome.unavailable(_fail_open("call failed"), str(exc))

        raw = message_text(resp)
        try:
            result = _coerce(parse_json_object(raw))
        except ValueError as exc:
            logger.warning("Classifier reply malformed, failing open: %s", exc)
            return Outcome.degraded(_fail_open("malformed reply"), str(exc))

        logger.info(
            "Classified: in_domain=%s confidence=%.2f grounding=%s structured=%s",
            result.in_domain, result.confidence,
            result.needs_grounding, result.needs_structured_answer,
        )
        return Outcome.ok(result)
