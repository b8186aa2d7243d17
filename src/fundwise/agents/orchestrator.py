"""Orchestrator – the blocking answer pipeline.

This is the top-level entry point.  Given a free-text query and the caller's
financial profile it:

1. **Classifies** the query; out-of-domain queries end here as a rejection
2. **Validates** the profile; an invalid profile ends here as an error
3. **Grounds** the answer in current fund data when the classifier asks for it
4. **Generates** a candidate answer and **validates** it, regenerating with
   the validator's errors until one passes or the attempt budget is spent
5. **Returns** exactly one of ``RejectionResponse`` / ``SuccessResponse`` /
   ``ErrorResponse``

No stage failure escapes ``run``: an unexpected exception becomes an
``ErrorResponse`` naming the stage that raised it.

Usage::

    from src.fundwise.agents.orchestrator import Orchestrator
    response = Orchestrator().run("Which fund should I start a SIP in?", profile)
    print(response.to_dict())
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from ..config.settings import MAX_GENERATION_ATTEMPTS
from ..models.schemas import (
    ClassificationResult, ErrorResponse, GenerationInstructions, PipelineResponse,
    RejectionResponse, Stage, SuccessResponse,
)
from ..services.llm import create_client
from ..services.tracing import Tracer
from .classifier import ClassifierAgent
from .context import ContextValidatorAgent
from .generator import GeneratorAgent
from .grounder import GrounderAgent
from .repair import RepairCoordinator
from .validator import ValidatorAgent

logger = logging.getLogger(__name__)

_REJECTION_INTRO = (
    "I can only help with Indian personal finance topics: mutual funds, SIPs, "
    "index funds, tax-saving investments and building an emergency fund."
)

EXAMPLE_QUESTIONS = (
    "Which mutual fund should I invest in?",
    "How should I allocate my SIP?",
    "Is my portfolio balanced?",
    "How to save tax with ELSS?",
    "Should I increase my emergency fund?",
)


def rejection_message(classification: ClassificationResult) -> str:
    suggestions = "\n".join(f"- {q}" for q in EXAMPLE_QUESTIONS)
    parts = [_REJECTION_INTRO]
    if classification.reason:
        parts.append(classification.reason)
    parts.append(f"Try asking about:\n{suggestions}")
    return "\n\n".join(parts)


def exhausted_message(attempts: int) -> str:
    return f"Failed to generate a valid answer after {attempts} attempts"


@dataclass
class RunProgress:
    """Which stage is running, for mapping unexpected exceptions."""

    stage: Stage = Stage.CLASSIFICATION


class Orchestrator:
    """Sequential classify → validate → ground → generate/repair pipeline."""

    def __init__(
        self,
        classifier: ClassifierAgent | None = None,
        context_validator: ContextValidatorAgent | None = None,
        grounder: GrounderAgent | None = None,
        generator: GeneratorAgent | None = None,
        validator: ValidatorAgent | None = None,
        max_attempts: int = MAX_GENERATION_ATTEMPTS,
        llm: Any | None = None,
    ):
        if llm is None and None in (classifier, grounder, generator):
            llm = create_client()
        self.classifier = classifier or ClassifierAgent(llm)
        self.context_validator = context_validator or ContextValidatorAgent()
        self.grounder = grounder or GrounderAgent(llm)
        self.generator = generator or GeneratorAgent(llm)
        self.validator = validator or ValidatorAgent()
        self.repair = RepairCoordinator(self.generator, self.validator, max_attempts)

    # ── public API ──────────────────────────────────────────────────────

    def run(
        self,
        query: str,
        profile: Any,
        instructions: GenerationInstructions | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> PipelineResponse:
        """Answer *query*; ``history`` holds earlier turns as chat messages."""
        started = time.monotonic()
        tracer = Tracer.start("pipeline_run", metadata={"query": query})
        progress = RunProgress()
        try:
            response = self._run(tracer, progress, query, profile, instructions, history)
        except Exception as exc:
            logger.exception("Unexpected error in stage %s", progress.stage.value)
            response = ErrorResponse(
                error=str(exc) or type(exc).__name__,
                stage=progress.stage,
                details={"exception": type(exc).__name__},
            )

        logger.info(
            "Pipeline finished: %s in %.2fs", response.type, time.monotonic() - started,
        )
        tracer.end(output=response.to_dict())
        return response

    # ── stages ──────────────────────────────────────────────────────────

    def _run(
        self,
        tracer: Tracer,
        progress: RunProgress,
        query: str,
        raw_profile: Any,
        instructions: GenerationInstructions | None,
        history: list[dict[str, str]] | None,
    ) -> PipelineResponse:
        # ── STEP 1: Classify ────────────────────────────────────────────
        with tracer.span("classification") as sp:
            outcome = self.classifier.classify(query)
            classification = outcome.value
            sp.update(output={**classification.to_dict(), "status": outcome.status.value})

        if not classification.in_domain:
            logger.info("Query rejected by classifier: %s", classification.reason)
            return RejectionResponse(
                classification=classification,
                message=rejection_message(classification),
            )

        # ── STEP 2: Validate the profile ────────────────────────────────
        progress.stage = Stage.CONTEXT_VALIDATION
        with tracer.span("context_validation") as sp:
            validation = self.context_validator.validate(raw_profile)
            sp.update(output={"valid": validation.valid, "errors": validation.errors})

        if not validation.valid:
            return ErrorResponse(
                error="Invalid user context",
                stage=Stage.CONTEXT_VALIDATION,
                details=validation.errors,
            )
        profile = validation.profile

        # ── STEP 3: Ground (conditional) ────────────────────────────────
        grounding = None
        if classification.needs_grounding:
            progress.stage = Stage.GROUNDING
            with tracer.span("grounding") as sp:
                grounded = self.grounder.ground(query)
                grounding = grounded.value
                sp.update(output={
                    "status": grounded.status.value,
                    "instruments": len(grounding.instruments),
                    "fallback_used": grounding.fallback_used,
                })
        else:
            logger.info("Grounding skipped for conceptual query")

        # ── STEP 4: Generate + validate + repair ────────────────────────
        progress.stage = Stage.GENERATION
        with tracer.span("generation") as sp:
            result = self.repair.run(
                query, profile, grounding,
                classification.needs_structured_answer, instructions,
                history=history,
            )
            sp.update(output={
                "success": result.success,
                "attempts": result.attempts,
                "errors": result.errors,
            })

        progress.stage = Stage.ORCHESTRATOR
        if not result.success:
            return ErrorResponse(
                error=exhausted_message(result.attempts),
                stage=Stage.VALIDATION,
                details=result.errors,
            )

        return SuccessResponse(
            classification=classification,
            artifact=result.artifact,
            repair_attempts=result.attempts,
            grounding=grounding,
        )
