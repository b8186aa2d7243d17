"""Repair Coordinator – bounded generate → validate → regenerate loop.

Attempt 1 generates fresh.  Each later attempt regenerates with the previous
raw output and the validator's error list in the prompt.  The loop stops at
the first accepted candidate or when the attempt budget is spent.

A generation that raises (empty completion, bad JSON, transport error) still
consumes its attempt; the exception becomes one synthetic error that the next
attempt sees like any validation error.
"""

from __future__ import annotations

import logging
import threading

from ..config.settings import MAX_GENERATION_ATTEMPTS
from ..models.profile import FinancialProfile
from ..models.schemas import (
    CandidateAnswer, GenerationInstructions, GroundingResult, RepairResult, RepairState,
)
from .generator import GenerationCancelled, GeneratorAgent
from .validator import ValidatorAgent

logger = logging.getLogger(__name__)


def generation_failed(exc: BaseException) -> str:
    return f"Generation failed: {exc}"


class RepairCoordinator:
    """Owns the attempt budget shared by blocking and streaming runs."""

    def __init__(
        self,
        generator: GeneratorAgent,
        validator: ValidatorAgent,
        max_attempts: int = MAX_GENERATION_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.generator = generator
        self.validator = validator
        self.max_attempts = max_attempts

    def run(
        self,
        query: str,
        profile: FinancialProfile,
        grounding: GroundingResult | None,
        needs_structured_answer: bool,
        instructions: GenerationInstructions | None = None,
        cancel_event: threading.Event | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> RepairResult:
        return self._loop(
            RepairState(), query, profile, grounding,
            needs_structured_answer, instructions, cancel_event, history,
        )

    def resume(
        self,
        state: RepairState,
        first_candidate: CandidateAnswer | None,
        query: str,
        profile: FinancialProfile,
        grounding: GroundingResult | None,
        needs_structured_answer: bool,
        instructions: GenerationInstructions | None = None,
        cancel_event: threading.Event | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> RepairResult:
        """Continue a run whose first attempt(s) were produced elsewhere.

        ``state.attempt`` counts the attempts already spent.  When
        ``first_candidate`` is given it is validated as attempt
        ``state.attempt`` before any regeneration.
        """
        if first_candidate is not None:
            outcome = self.validator.validate(first_candidate, profile, needs_structured_answer)
            if outcome.accepted:
                return RepairResult(
                    success=True, attempts=state.attempt,
                    artifact=outcome.artifact, candidate=first_candidate,
                )
            logger.info(
                "Attempt %d rejected with %d error(s)", state.attempt, len(outcome.errors),
            )
            state.last_candidate_raw = first_candidate.raw
            state.last_errors = outcome.errors
        return self._loop(
            state, query, profile, grounding,
            needs_structured_answer, instructions, cancel_event, history,
        )

    def _loop(
        self,
        state: RepairState,
        query: str,
        profile: FinancialProfile,
        grounding: GroundingResult | None,
        needs_structured_answer: bool,
        instructions: GenerationInstructions | None,
        cancel_event: threading.Event | None,
        history: list[dict[str, str]] | None = None,
    ) -> RepairResult:
        while state.attempt < self.max_attempts:
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled("repair cancelled by caller")
            state.attempt += 1
            repair = (
                RepairState(state.attempt - 1, state.last_candidate_raw, list(state.last_errors))
                if state.attempt > 1 else None
            )
            logger.info("Generation attempt %d/%d", state.attempt, self.max_attempts)

            try:
                candidate = self.generator.generate(
                    query, profile, grounding, needs_structured_answer,
                    instructions=instructions, repair=repair, history=history,
                )
            except Exception as exc:
                logger.warning("Attempt %d failed to generate: %s", state.attempt, exc)
                state.last_errors = [generation_failed(exc)]
                continue

            outcome = self.validator.validate(candidate, profile, needs_structured_answer)
            if outcome.accepted:
                logger.info("Attempt %d accepted", state.attempt)
                return RepairResult(
                    success=True, attempts=state.attempt,
                    artifact=outcome.artifact, candidate=candidate,
                )

            logger.info(
                "Attempt %d rejected with %d error(s)", state.attempt, len(outcome.errors),
            )
            state.last_candidate_raw = candidate.raw
            state.last_errors = outcome.errors

        logger.warning("Repair budget exhausted after %d attempts", state.attempt)
        return RepairResult(
            success=False, attempts=state.attempt, errors=list(state.last_errors),
        )
