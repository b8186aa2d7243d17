"""Streaming Orchestrator – the same pipeline, reported as an event stream.

Stage order and gates match ``Orchestrator``.  The differences:

• progress is written to a sink as SSE frames (see ``streaming.emitter``)
• the first generation attempt is streamed: narrative text reaches the
  client as ``text.delta`` events while the model is still writing
• the completed answer still goes through the validator and the same
  bounded repair budget; when a repaired answer replaces the streamed one
  it arrives in a new text block whose ``text.block.started`` names the
  block it ``replaces``
• user and assistant messages are recorded in a conversation store, and the
  earlier turns of a continued conversation are replayed to the model

``run_free_chat`` streams an unconstrained chat reply over the same event
protocol and conversation store, skipping every gate.

Every exit path stops the keepalive timer and closes the sink.  The timer is
stopped before ``stream.end`` so nothing follows the terminal event.  When
the caller cancels (or the sink reports the client has gone) no further
events are written; frames already delivered stay delivered.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from ..config.settings import KEEPALIVE_INTERVAL_SECONDS, MAX_GENERATION_ATTEMPTS
from ..models.schemas import (
    ChatResponse, Conversation, ErrorResponse, GenerationInstructions, PipelineResponse,
    RejectionResponse, RepairState, Stage, SuccessResponse,
)
from ..services.conversation_store import (
    ConversationStore, InMemoryConversationStore, append_message, chat_history,
    conversation_title, create_assistant_message, create_user_message,
    get_or_create_conversation,
)
from ..services.llm import create_client
from ..services.tracing import Tracer
from ..streaming import emitter as events
from ..streaming.emitter import StreamEmitter
from ..streaming.keepalive import Keepalive
from ..streaming.sinks import FrameSink, SinkClosedError
from .classifier import ClassifierAgent
from .context import ContextValidatorAgent
from .free_chat import FreeChatAgent
from .generator import GenerationCancelled, GeneratorAgent, estimate_tokens
from .grounder import GrounderAgent
from .orchestrator import RunProgress, exhausted_message, rejection_message
from .repair import RepairCoordinator, generation_failed
from .validator import ValidatorAgent

logger = logging.getLogger(__name__)


class _Aborted(Exception):
    """Cancellation or client disconnect; stop writing events."""


@dataclass
class _Turn:
    """Per-request state shared by the pipeline and free-chat paths."""

    emitter: StreamEmitter
    keepalive: Keepalive
    tracer: Tracer
    conversation: Conversation
    is_new: bool
    history: list[dict[str, str]]
    cancel_event: threading.Event
    model: str


class StreamingOrchestrator:
    """Event-streaming variant of the answer pipeline."""

    def __init__(
        self,
        classifier: ClassifierAgent | None = None,
        context_validator: ContextValidatorAgent | None = None,
        grounder: GrounderAgent | None = None,
        generator: GeneratorAgent | None = None,
        validator: ValidatorAgent | None = None,
        store: ConversationStore | None = None,
        max_attempts: int = MAX_GENERATION_ATTEMPTS,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
        llm: Any | None = None,
        free_chat: FreeChatAgent | None = None,
    ):
        if llm is None and None in (classifier, grounder, generator):
            llm = create_client()
        self._llm = llm
        self.classifier = classifier or ClassifierAgent(llm)
        self.context_validator = context_validator or ContextValidatorAgent()
        self.grounder = grounder or GrounderAgent(llm)
        self.generator = generator or GeneratorAgent(llm)
        self.validator = validator or ValidatorAgent()
        self.store = store if store is not None else InMemoryConversationStore()
        self.repair = RepairCoordinator(self.generator, self.validator, max_attempts)
        self.keepalive_interval = keepalive_interval
        self._free_chat = free_chat

    @property
    def free_chat(self) -> FreeChatAgent:
        if self._free_chat is None:
            self._free_chat = FreeChatAgent(self._llm)
        return self._free_chat

    # ── public API ──────────────────────────────────────────────────────

    def run(
        self,
        query: str,
        profile: Any,
        sink: FrameSink,
        conversation_id: str | None = None,
        instructions: GenerationInstructions | None = None,
        cancel_event: threading.Event | None = None,
    ) -> PipelineResponse | None:
        """Stream one answer into *sink*.

        Returns the pipeline response that was delivered, or None when the
        stream was aborted before a terminal event.
        """
        progress = RunProgress()
        return self._drive(
            "pipeline_stream", query, sink, conversation_id, cancel_event,
            self.generator.model, progress,
            lambda turn: self._stream(turn, progress, query, profile, instructions),
        )

    def run_free_chat(
        self,
        query: str,
        sink: FrameSink,
        conversation_id: str | None = None,
        system_prompt: str | None = None,
        context: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ChatResponse | ErrorResponse | None:
        """Stream an unconstrained chat reply into *sink*.

        Same return convention as ``run``.
        """
        progress = RunProgress(stage=Stage.GENERATION)
        return self._drive(
            "free_chat_stream", query, sink, conversation_id, cancel_event,
            self.free_chat.model, progress,
            lambda turn: self._chat(turn, query, system_prompt, context),
        )

    # ── request lifecycle ───────────────────────────────────────────────

    def _drive(
        self,
        trace_name: str,
        query: str,
        sink: FrameSink,
        conversation_id: str | None,
        cancel_event: threading.Event | None,
        model: str,
        progress: RunProgress,
        body: Callable[[_Turn], Any],
    ) -> Any:
        cancel_event = cancel_event or threading.Event()
        emitter = StreamEmitter(uuid.uuid4().hex, sink)
        tracer = Tracer.start(
            trace_name,
            metadata={"query": query, "message_id": emitter.message_id},
        )

        conversation, is_new = get_or_create_conversation(self.store, conversation_id, model)
        if is_new:
            conversation.title = conversation_title(query)
        history = chat_history(conversation.messages)
        append_message(self.store, conversation, create_user_message(conversation.id, query))

        keepalive = Keepalive(emitter, self.keepalive_interval).start()
        turn = _Turn(
            emitter, keepalive, tracer, conversation, is_new, history, cancel_event, model,
        )
        response = None
        try:
            response = body(turn)
        except (_Aborted, GenerationCancelled, SinkClosedError) as exc:
            cancel_event.set()
            logger.info("Stream %s aborted: %s", emitter.message_id, exc)
        except Exception as exc:
            logger.exception("Unexpected error in stage %s", progress.stage.value)
            response = ErrorResponse(
                error=str(exc) or type(exc).__name__,
                stage=progress.stage,
                details={"exception": type(exc).__name__},
            )
            self._fail(turn, response)
        finally:
            keepalive.stop()
            sink.close()
            tracer.end(output=response.to_dict() if response else {"aborted": True})
        return response

    # ── pipeline ────────────────────────────────────────────────────────

    def _stream(
        self,
        turn: _Turn,
        progress: RunProgress,
        query: str,
        raw_profile: Any,
        instructions: GenerationInstructions | None,
    ) -> PipelineResponse:
        emitter, tracer = turn.emitter, turn.tracer
        events.message_started(emitter, turn.model)

        # ── Classify ────────────────────────────────────────────────────
        with tracer.span("classification") as sp:
            outcome = self.classifier.classify(query)
            classification = outcome.value
            sp.update(output={**classification.to_dict(), "status": outcome.status.value})
        self._check_cancel(turn.cancel_event)

        if not classification.in_domain:
            rejection = RejectionResponse(
                classification=classification,
                message=rejection_message(classification),
            )
            events.text_block_started(emitter)
            events.text_delta(emitter, rejection.message)
            events.text_block_completed(emitter)
            self._finish(
                turn, rejection.message,
                token_count=estimate_tokens(rejection.message),
                finish_reason="stop", status="rejected", result=rejection.to_dict(),
            )
            return rejection

        # ── Validate the profile ────────────────────────────────────────
        progress.stage = Stage.CONTEXT_VALIDATION
        with tracer.span("context_validation") as sp:
            validation = self.context_validator.validate(raw_profile)
            sp.update(output={"valid": validation.valid, "errors": validation.errors})
        if not validation.valid:
            error = ErrorResponse(
                error="Invalid user context",
                stage=Stage.CONTEXT_VALIDATION,
                details=validation.errors,
            )
            self._fail(turn, error)
            return error
        profile = validation.profile

        # ── Ground (conditional) ────────────────────────────────────────
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
            self._check_cancel(turn.cancel_event)

        # ── Generate (streamed first attempt) ───────────────────────────
        progress.stage = Stage.GENERATION
        structured = classification.needs_structured_answer
        streamed: list[str] = []

        def on_text(delta: str) -> None:
            streamed.append(delta)
            events.text_delta(emitter, delta)

        state = RepairState(attempt=1)
        candidate = None
        with tracer.span("generation") as sp:
            events.text_block_started(emitter)
            streamed_block = emitter.current_block()
            try:
                candidate = self.generator.generate_stream(
                    query, profile, grounding, structured, on_text,
                    instructions=instructions, cancel_event=turn.cancel_event,
                    history=turn.history,
                )
            except (GenerationCancelled, SinkClosedError):
                raise
            except Exception as exc:
                logger.warning("Streamed attempt failed to generate: %s", exc)
                state.last_errors = [generation_failed(exc)]
            events.text_block_completed(emitter)

            progress.stage = Stage.VALIDATION
            result = self.repair.resume(
                state, candidate, query, profile, grounding, structured,
                instructions=instructions, cancel_event=turn.cancel_event,
                history=turn.history,
            )
            sp.update(output={
                "success": result.success,
                "attempts": result.attempts,
                "errors": result.errors,
            })

        if not result.success:
            error = ErrorResponse(
                error=exhausted_message(result.attempts),
                stage=Stage.VALIDATION,
                details=result.errors,
            )
            self._fail(turn, error)
            return error

        progress.stage = Stage.ORCHESTRATOR
        narrative = result.artifact.narrative
        if "".join(streamed) != narrative:
            logger.info(
                "Delivering validated narrative from attempt %d in a replacement block",
                result.attempts,
            )
            events.text_block_started(emitter, replaces=streamed_block)
            events.text_delta(emitter, narrative)
            events.text_block_completed(emitter)

        success = SuccessResponse(
            classification=classification,
            artifact=result.artifact,
            repair_attempts=result.attempts,
            grounding=grounding,
        )
        final = result.candidate
        self._finish(
            turn, narrative,
            token_count=final.token_count if final else estimate_tokens(narrative),
            finish_reason=final.finish_reason if final else "stop",
            status="success", result=success.to_dict(),
        )
        return success

    # ── free chat ───────────────────────────────────────────────────────

    def _chat(
        self,
        turn: _Turn,
        query: str,
        system_prompt: str | None,
        context: str | None,
    ) -> ChatResponse:
        emitter = turn.emitter
        events.message_started(emitter, turn.model)
        with turn.tracer.span("free_chat") as sp:
            events.text_block_started(emitter)
            reply = self.free_chat.stream(
                query, lambda delta: events.text_delta(emitter, delta),
                system_prompt=system_prompt, context=context,
                history=turn.history, cancel_event=turn.cancel_event,
            )
            events.text_block_completed(emitter)
            sp.update(output={
                "chars": len(reply.content),
                "finish_reason": reply.finish_reason,
            })
        self._finish(
            turn, reply.content,
            token_count=reply.token_count, finish_reason=reply.finish_reason,
            status="success", result=reply.to_dict(),
        )
        return reply

    # ── helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _check_cancel(cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise _Aborted("cancelled by caller")

    def _finish(
        self,
        turn: _Turn,
        text: str,
        *,
        token_count: int,
        finish_reason: str,
        status: str,
        result: dict[str, Any],
    ) -> None:
        emitter, conversation = turn.emitter, turn.conversation
        events.message_completed(
            emitter, token_count, finish_reason=finish_reason, status=status, result=result,
        )
        append_message(
            self.store, conversation,
            create_assistant_message(conversation.id, text, turn.model, token_count),
        )
        events.conversation_info(emitter, conversation.id, turn.is_new, conversation.title)
        turn.keepalive.stop()
        events.stream_end(emitter)

    @staticmethod
    def _fail(turn: _Turn, error: ErrorResponse) -> None:
        try:
            events.message_failed(
                turn.emitter, error.error, code=error.stage.value, details=error.details,
            )
            turn.keepalive.stop()
            events.stream_end(turn.emitter)
        except SinkClosedError:
            logger.info("Sink closed before failure could be reported")
