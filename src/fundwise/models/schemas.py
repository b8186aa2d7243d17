"""Shared data models for the fundwise answer pipeline.

Internal pipeline records are plain dataclasses.  The two payloads that come
from outside the process (the caller's profile and the model's answer) are
pydantic models and live in ``profile.py`` / ``artifact.py``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar, Union

from .artifact import Artifact

T = TypeVar("T")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ── Tagged outcomes ──────────────────────────────────────────────────────

class OutcomeStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"          # value substituted or partial
    UNAVAILABLE = "unavailable"    # capability call failed outright


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """A stage result that records *how* the value was obtained."""

    status: OutcomeStatus
    value: T
    reason: str = ""

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(OutcomeStatus.OK, value)

    @classmethod
    def degraded(cls, value: T, reason: str) -> "Outcome[T]":
        return cls(OutcomeStatus.DEGRADED, value, reason)

    @classmethod
    def unavailable(cls, value: T, reason: str) -> "Outcome[T]":
        return cls(OutcomeStatus.UNAVAILABLE, value, reason)

    @property
    def is_ok(self) -> bool:
        return self.status is OutcomeStatus.OK


# ── Stage records ────────────────────────────────────────────────────────

class Stage(str, Enum):
    CLASSIFICATION = "classification"
    CONTEXT_VALIDATION = "context_validation"
    GROUNDING = "grounding"
    GENERATION = "generation"
    VALIDATION = "validation"
    ORCHESTRATOR = "orchestrator"


@dataclass
class ClassificationResult:
    in_domain: bool
    confidence: float
    reason: str
    needs_grounding: bool = True
    needs_structured_answer: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Instrument:
    """Best-effort facts about one fund; unknown values are ``"unknown"``."""

    name: str
    category: str
    fund_house: str = "unknown"
    expense_ratio: str = "unknown"
    return_1y: str = "unknown"
    return_3y: str = "unknown"
    aum_crores: float = 0.0


@dataclass(frozen=True)
class GroundingResult:
    query_used: str
    instruments: tuple[Instrument, ...]
    sources: tuple[str, ...]
    fetched_at: str = field(default_factory=utc_now_iso)
    fallback_used: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["instruments"] = [asdict(i) for i in self.instruments]
        data["sources"] = list(self.sources)
        return data


@dataclass
class GenerationInstructions:
    """Caller overrides for prompt experimentation."""

    system_prompt: str | None = None
    output_format: str | None = None


@dataclass
class CandidateAnswer:
    """Raw generator output. Not trusted until the validator accepts it."""

    raw: str
    parsed: Any
    finish_reason: str = "stop"
    token_count: int = 0


@dataclass
class ValidationOutcome:
    accepted: bool
    errors: list[str] = field(default_factory=list)
    artifact: Artifact | None = None


@dataclass
class RepairState:
    """Carried between repair attempts; overwritten, never accumulated."""

    attempt: int = 0
    last_candidate_raw: str = ""
    last_errors: list[str] = field(default_factory=list)


@dataclass
class RepairResult:
    success: bool
    attempts: int
    artifact: Artifact | None = None
    errors: list[str] = field(default_factory=list)
    candidate: CandidateAnswer | None = None


# ── Pipeline responses ───────────────────────────────────────────────────

@dataclass
class RejectionResponse:
    classification: ClassificationResult
    message: str
    type: str = "rejection"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "classification": self.classification.to_dict(),
            "message": self.message,
        }


@dataclass
class SuccessResponse:
    classification: ClassificationResult
    artifact: Artifact
    repair_attempts: int
    grounding: GroundingResult | None = None
    type: str = "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "classification": self.classification.to_dict(),
            "grounding": self.grounding.to_dict() if self.grounding else None,
            "artifact": self.artifact.model_dump(mode="json", exclude_none=True),
            "repairAttempts": self.repair_attempts,
        }


@dataclass
class ErrorResponse:
    error: str
    stage: Stage
    details: Any = None
    type: str = "error"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "error": self.error,
            "stage": self.stage.value,
        }
        if self.details is not None:
            data["details"] = self.details
        return data


PipelineResponse = Union[RejectionResponse, SuccessResponse, ErrorResponse]


@dataclass
class ChatResponse:
    """Free-chat reply; never classified or validated."""

    content: str
    finish_reason: str = "stop"
    token_count: int = 0
    type: str = "success"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "content": self.content}


# ── Conversations ────────────────────────────────────────────────────────

@dataclass
class TextBlock:
    text: str
    block_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    type: str = "text"


@dataclass
class MessageContent:
    blocks: list[TextBlock] = field(default_factory=list)
    tools: list[Any] = field(default_factory=list)
    attachments: list[Any] = field(default_factory=list)
    visuals: list[Any] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.blocks if b.type == "text")


@dataclass
class Message:
    conversation_id: str
    role: str                      # "user" | "assistant"
    content: MessageContent
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    model: str | None = None
    token_count: int | None = None
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class Conversation:
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    title: str = ""
    messages: list[Message] = field(default_factory=list)
    model: str = ""
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)


# ── Stream events ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StreamEvent:
    type: str
    message_id: str
    sequence: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "messageId": self.message_id,
            "sequence": self.sequence,
            "payload": self.payload,
        }
