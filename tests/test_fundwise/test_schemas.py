"""Tests for shared data models (schemas.py, artifact.py)."""

import pytest
from pydantic import ValidationError
from src.fundwise.models.artifact import Artifact, NarrativeAnswer, StructuredAnswer
from src.fundwise.models.schemas import (
    ClassificationResult,
    ErrorResponse,
    GroundingResult,
    Instrument,
    MessageContent,
    Outcome,
    OutcomeStatus,
    RejectionResponse,
    Stage,
    StreamEvent,
    SuccessResponse,
    TextBlock,
)

from conftest import make_narrative_answer, make_structured_answer


# ── Outcome ──────────────────────────────────────────────────────────────

class TestOutcome:
    def test_ok(self):
        o = Outcome.ok(42)
        assert o.is_ok
        assert o.status is OutcomeStatus.OK
        assert o.reason == ""

    def test_degraded_keeps_value_and_reason(self):
        o = Outcome.degraded("fallback", "search down")
        assert not o.is_ok
        assert o.value == "fallback"
        assert o.reason == "search down"

    def test_unavailable(self):
        o = Outcome.unavailable(None, "timeout")
        assert o.status is OutcomeStatus.UNAVAILABLE


# ── Stage ────────────────────────────────────────────────────────────────

class TestStage:
    def test_wire_names(self):
        for val in ("classification", "context_validation", "grounding",
                    "generation", "validation", "orchestrator"):
            assert Stage(val).value == val


# ── Classification / grounding ───────────────────────────────────────────

class TestClassificationResult:
    def test_flags_default_true(self):
        c = ClassificationResult(in_domain=True, confidence=0.9, reason="ok")
        assert c.needs_grounding is True
        assert c.needs_structured_answer is True

    def test_to_dict(self):
        c = ClassificationResult(in_domain=False, confidence=0.1, reason="weather")
        assert c.to_dict()["in_domain"] is False


class TestGroundingResult:
    def test_frozen(self):
        g = GroundingResult(query_used="q", instruments=(), sources=())
        with pytest.raises(AttributeError):
            g.query_used = "other"  # type: ignore[misc]

    def test_fetched_at_is_utc_iso(self):
        g = GroundingResult(query_used="q", instruments=(), sources=())
        assert g.fetched_at.endswith("+00:00")

    def test_to_dict_lists(self):
        g = GroundingResult(
            query_used="q",
            instruments=(Instrument(name="A", category="index"),),
            sources=("https://x",),
        )
        d = g.to_dict()
        assert d["instruments"][0]["name"] == "A"
        assert d["instruments"][0]["expense_ratio"] == "unknown"
        assert d["sources"] == ["https://x"]


# ── Artifact ─────────────────────────────────────────────────────────────

class TestArtifact:
    def test_structured_answer_parses(self):
        a = StructuredAnswer.model_validate(make_structured_answer())
        assert isinstance(a, Artifact)
        assert a.recommendations[0].execution_enabled is False

    def test_extra_keys_forbidden(self):
        with pytest.raises(ValidationError):
            StructuredAnswer.model_validate(make_structured_answer(extra="nope"))

    def test_strict_no_coercion(self):
        data = make_structured_answer()
        data["recommendations"][0]["amount"] = "20000"
        with pytest.raises(ValidationError):
            StructuredAnswer.model_validate(data)

    def test_narrative_answer_rejects_recommendations(self):
        with pytest.raises(ValidationError):
            NarrativeAnswer.model_validate(make_narrative_answer(recommendations=[]))

    def test_narrative_to_artifact(self):
        a = NarrativeAnswer.model_validate(make_narrative_answer()).to_artifact()
        assert a.analysis is None
        assert a.recommendations == []


# ── Pipeline responses ───────────────────────────────────────────────────

class TestResponses:
    def _classification(self):
        return ClassificationResult(in_domain=True, confidence=0.9, reason="finance")

    def test_rejection_shape(self):
        r = RejectionResponse(classification=self._classification(), message="no")
        assert r.to_dict() == {
            "type": "rejection",
            "classification": self._classification().to_dict(),
            "message": "no",
        }

    def test_success_shape(self):
        artifact = StructuredAnswer.model_validate(make_structured_answer())
        s = SuccessResponse(
            classification=self._classification(), artifact=artifact, repair_attempts=2,
        )
        d = s.to_dict()
        assert d["type"] == "success"
        assert d["grounding"] is None
        assert d["repairAttempts"] == 2
        assert d["artifact"]["recommendations"][0]["action"] == "BUY"

    def test_narrative_success_omits_analysis(self):
        artifact = NarrativeAnswer.model_validate(make_narrative_answer()).to_artifact()
        s = SuccessResponse(
            classification=self._classification(), artifact=artifact, repair_attempts=1,
        )
        assert "analysis" not in s.to_dict()["artifact"]

    def test_error_shape(self):
        e = ErrorResponse(error="bad", stage=Stage.CONTEXT_VALIDATION, details=["x"])
        assert e.to_dict() == {
            "type": "error", "error": "bad", "stage": "context_validation", "details": ["x"],
        }

    def test_error_without_details(self):
        e = ErrorResponse(error="bad", stage=Stage.ORCHESTRATOR)
        assert "details" not in e.to_dict()


# ── Conversations / events ───────────────────────────────────────────────

class TestMessageContent:
    def test_text_joins_text_blocks(self):
        content = MessageContent(blocks=[TextBlock(text="a"), TextBlock(text="b")])
        assert content.text == "a\nb"

    def test_block_ids_unique(self):
        assert TextBlock(text="a").block_id != TextBlock(text="a").block_id


class TestStreamEvent:
    def test_to_dict_uses_camel_case_message_id(self):
        ev = StreamEvent(type="stream.end", message_id="m1", sequence=3)
        assert ev.to_dict() == {
            "type": "stream.end", "messageId": "m1", "sequence": 3, "payload": {},
        }
