"""Free Chat Agent – unconstrained streamed conversation.

No classifier, no profile, no grounding and no validator: the query (plus any
earlier turns and optional caller context) goes straight to the model and the
reply is streamed back token by token.  The caller may replace the default
system prompt.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from ..config.settings import FREE_CHAT_MAX_TOKENS, FREE_CHAT_MODEL, FREE_CHAT_TEMPERATURE
from ..models.schemas import ChatResponse
from ..services.llm import create_client
from .generator import GenerationCancelled, GenerationError, estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_FREE_CHAT_PROMPT = """\
You are a helpful AI assistant. You can discuss any topic and help with
various tasks.

Be helpful, accurate and conversational. If you don't know something, say so
honestly.
"""


def build_chat_messages(
    query: str,
    system_prompt: str | None = None,
    context: str | None = None,
    history: list[dict[str, str]] | None = None,
) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt or DEFAULT_FREE_CHAT_PROMPT}]
    if context:
        messages.append({"role": "system", "content": f"Context/Parameters:\n{context}"})
    messages.extend(history or [])
    messages.append({"role": "user", "content": query})
    return messages


class FreeChatAgent:
    """Stream a plain chat reply; ``on_text`` receives every token."""

    def __init__(
        self,
        llm: Any | None = None,
        model: str = FREE_CHAT_MODEL,
        temperature: float = FREE_CHAT_TEMPERATURE,
        max_tokens: int = FREE_CHAT_MAX_TOKENS,
    ):
        self._llm = llm or create_client()
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def stream(
        self,
        query: str,
        on_text: Callable[[str], None],
        system_prompt: str | None = None,
        context: str | None = None,
        history: list[dict[str, str]] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ChatResponse:
        messages = build_chat_messages(query, system_prompt, context, history)
        logger.info(
            "Free chat (custom_prompt=%s, context=%s, prior_turns=%d)",
            system_prompt is not None, bool(context), len(history or []),
        )
        stream = self._llm.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            stream=True,
        )

        parts: list[str] = []
        finish_reason = "stop"
        try:
            for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    raise GenerationCancelled("chat cancelled by caller")
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                token = choice.delta.content if choice.delta else None
                if token:
                    parts.append(token)
                    on_text(token)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()

        content = "".join(parts)
        if not content.strip():
            raise GenerationError("empty completion")
        logger.info("Free chat complete: %d chars", len(content))
        return ChatResponse(
            content=content,
            finish_reason=finish_reason,
            token_count=estimate_tokens(content),
        )
