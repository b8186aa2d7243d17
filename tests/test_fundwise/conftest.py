"""Unit tests for the fundwise answer pipeline.

These tests use **mocks** for every external dependency (OpenAI chat
completions, the hosted web search, Langfuse) so they run fast, offline, and
deterministically.

Run all tests::

    uv run --env-file .env pytest -sv tests/test_fundwise/

Run a single file::

    uv run --env-file .env pytest -sv tests/test_fundwise/test_validator.py

Organisation
------------
- ``test_schemas.py``             – data-model invariants and wire shapes
- ``test_context.py``             – profile validation + derived metrics
- ``test_classifier.py``          – classifier fail-open paths (mocked LLM)
- ``test_grounder.py``            – grounding cache + fallback (mocked search)
- ``test_narrative_parser.py``    – incremental narrative extraction
- ``test_generator.py``           – prompt assembly + streaming (mocked LLM)
- ``test_validator.py``           – schema + business rules (pure logic)
- ``test_repair.py``              – bounded repair loop
- ``test_orchestrator.py``        – end-to-end blocking pipeline (all mocked)
- ``test_emitter.py``             – event frames, sequencing, keepalive, sinks
- ``test_streaming_orchestrator.py`` – end-to-end streaming pipeline
- ``test_conversation_store.py``  – in-memory conversation store + history replay
- ``test_free_chat.py``           – free chat prompt assembly + streaming
- ``test_manual_eval.py``         – manual scenario runner
"""

import copy
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from src.fundwise.agents.context import DEFAULT_PROFILE
from src.fundwise.models.profile import FinancialProfile


# ── Fake OpenAI responses ───────────────────────────────────────────────

def make_completion(content, finish_reason="stop", completion_tokens=None):
    """Shape of ``client.chat.completions.create(...)`` without streaming."""
    if not isinstance(content, str):
        content = json.dumps(content)
    choice = SimpleNamespace(
        message=SimpleNamespace(content=content),
        finish_reason=finish_reason,
    )
    usage = (
        SimpleNamespace(completion_tokens=completion_tokens)
        if completion_tokens is not None else None
    )
    return SimpleNamespace(choices=[choice], usage=usage)


class FakeStream:
    """Iterable of streamed chunks that records ``close()``."""

    def __init__(self, pieces, finish_reason="stop"):
        self.chunks = [
            SimpleNamespace(choices=[SimpleNamespace(
                delta=SimpleNamespace(content=p), finish_reason=None,
            )])
            for p in pieces
        ]
        self.chunks.append(SimpleNamespace(choices=[SimpleNamespace(
            delta=SimpleNamespace(content=None), finish_reason=finish_reason,
        )]))
        self.closed = False

    def __iter__(self):
        return iter(self.chunks)

    def close(self):
        self.closed = True


def split_chunks(text, size=7):
    return [text[i:i + size] for i in range(0, len(text), size)]


# ── Answer payloads ─────────────────────────────────────────────────────

NARRATIVE = (
    "You have a healthy surplus of ₹70,000 a month. Start a SIP in a Nifty 50 "
    "index fund.\n\nI'm not a registered financial advisor."
)


def make_recommendation(
    name="UTI Nifty 50 Index Fund Direct Growth",
    category="index_fund",
    action="BUY",
    amount=20000,
    rationale="Low expense ratio of 0.18% and broad large cap exposure.",
    execution_enabled=False,
):
    return {
        "instrument": {"name": name, "category": category},
        "action": action,
        "rationale": rationale,
        "amount": amount,
        "execution_enabled": execution_enabled,
    }


def make_structured_answer(recommendations=None, **overrides):
    answer = {
        "narrative": NARRATIVE,
        "intent": {"summary": "Start a SIP", "query_type": "new_investment"},
        "situation": {
            "description": "Surplus of ₹70,000 with a funded emergency reserve",
            "data_basis": "user_data",
            "scenario_type": "data-backed",
        },
        "analysis": {
            "risk_assessment": "Moderate risk capacity with two dependents",
            "expected_returns": "10-12% long-run CAGR for Nifty 50",
            "allocation_reasoning": "Core index exposure",
            "amount_calculation": "₹20,000 of ₹70,000 surplus",
        },
        "recommendations": (
            [make_recommendation()] if recommendations is None else recommendations
        ),
    }
    answer.update(overrides)
    return answer


def make_narrative_answer(**overrides):
    answer = {
        "narrative": NARRATIVE,
        "intent": {"summary": "Explain SIPs", "query_type": "general_advice"},
        "situation": {
            "description": "General question",
            "data_basis": "hypothetical",
            "scenario_type": "hypothetical",
        },
    }
    answer.update(overrides)
    return answer


# ── Fixtures ────────────────────────────────────────────────────────────

@pytest.fixture
def profile_dict():
    """Realistic profile: ₹70,000 monthly surplus, emergency fund covered."""
    return copy.deepcopy(DEFAULT_PROFILE)


@pytest.fixture
def profile(profile_dict):
    return FinancialProfile.model_validate(profile_dict)


@pytest.fixture
def llm():
    """Bare mock standing in for the ``OpenAI`` client."""
    return MagicMock()
