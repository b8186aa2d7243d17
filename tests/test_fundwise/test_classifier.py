"""Tests for the Classifier agent with mocked LLM calls."""

from unittest.mock import MagicMock

import pytest
from src.fundwise.agents.classifier import ClassifierAgent
from src.fundwise.models.schemas import OutcomeStatus

from conftest import make_completion


def _agent(reply=None, error=None):
    llm = MagicMock()
    if error is not None:
        llm.chat.completions.create.side_effect = error
    else:
        llm.chat.completions.create.return_value = make_completion(reply)
    return ClassifierAgent(llm=llm, model="test-model"), llm


class TestClassifierHappyPath:
    def test_in_domain(self):
        agent, llm = _agent({
            "in_domain": True, "confidence": 0.95, "reason": "SIP question",
            "needs_grounding": True, "needs_structured_answer": True,
        })
        outcome = agent.classify("Which fund should I start a SIP in?")
        assert outcome.status is OutcomeStatus.OK
        assert outcome.value.in_domain is True
        assert outcome.value.confidence == 0.95

        kwargs = llm.chat.completions.create.call_args.kwargs
        assert kwargs["temperature"] == 0
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][-1]["content"] == "Which fund should I start a SIP in?"

    def test_out_of_domain(self):
        agent, _ = _agent({"in_domain": False, "confidence": 0.99, "reason": "weather"})
        outcome = agent.classify("what's the weather")
        assert outcome.is_ok
        assert outcome.value.in_domain is False

    def test_conceptual_query_flags(self):
        agent, _ = _agent({
            "in_domain": True, "confidence": 0.9, "reason": "concept",
            "needs_grounding": False, "needs_structured_answer": False,
        })
        value = agent.classify("What is an expense ratio?").value
        assert value.needs_grounding is False
        assert value.needs_structured_answer is False

    def test_missing_flags_default_true(self):
        agent, _ = _agent({"in_domain": True, "confidence": 0.8, "reason": "ok"})
        value = agent.classify("Is my portfolio balanced?").value
        assert value.needs_grounding is True
        assert value.needs_structured_answer is True

    def test_confidence_clamped(self):
        agent, _ = _agent({"in_domain": True, "confidence": 7, "reason": "ok"})
        assert agent.classify("q").value.confidence == 1.0

    def test_fenced_reply(self):
        agent, _ = _agent('```json\n{"in_domain": false, "confidence": 0.9, "reason": "x"}\n```')
        assert agent.classify("q").value.in_domain is False


class TestClassifierFailsOpen:
    def test_call_failure_is_unavailable(self):
        agent, _ = _agent(error=RuntimeError("connection reset"))
        outcome = agent.classify("Which fund?")
        assert outcome.status is OutcomeStatus.UNAVAILABLE
        assert outcome.value.in_domain is True
        assert outcome.value.confidence == 0.5
        assert outcome.value.needs_grounding is True
        assert outcome.value.needs_structured_answer is True
        assert "connection reset" in outcome.reason

    @pytest.mark.parametrize("reply", [
        "",
        "not json at all",
        "[1, 2, 3]",
        '{"confidence": 0.9}',
        '{"in_domain": "yes", "confidence": 0.9}',
    ])
    def test_malformed_reply_is_degraded(self, reply):
        agent, _ = _agent(reply)
        outcome = agent.classify("Which fund?")
        assert outcome.status is OutcomeStatus.DEGRADED
        assert outcome.value.in_domain is True
        assert outcome.value.confidence == 0.5
