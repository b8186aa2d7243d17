"""Conversation storage for the chat surface.

Conversations live for the process lifetime only.  The store is an injected
interface so a persistent implementation can replace the in-memory one
without touching the orchestrators.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from ..config.settings import MAX_CONTEXT_MESSAGES
from ..models.schemas import (
    Conversation, Message, MessageContent, TextBlock, utc_now_iso,
)

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50


class ConversationStore(Protocol):
    def get(self, conversation_id: str) -> Conversation | None: ...

    def put(self, conversation: Conversation) -> None: ...

    def delete(self, conversation_id: str) -> bool: ...

    def list(self) -> list[Conversation]: ...


class InMemoryConversationStore:
    """Dict-backed store guarded by a lock."""

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def put(self, conversation: Conversation) -> None:
        with self._lock:
            self._conversations[conversation.id] = conversation

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    def list(self) -> list[Conversation]:
        """Most recently updated first."""
        with self._lock:
            items = list(self._conversations.values())
        return sorted(items, key=lambda c: c.updated_at, reverse=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)


def conversation_title(first_message: str) -> str:
    """First line of the message, cut to 50 characters."""
    title = first_message.split("\n", 1)[0][:TITLE_MAX_CHARS]
    return f"{title}..." if len(title) < len(first_message) else title


def create_user_message(
    conversation_id: str, text: str, attachments: list | None = None,
) -> Message:
    return Message(
        conversation_id=conversation_id,
        role="user",
        content=MessageContent(blocks=[TextBlock(text=text)], attachments=list(attachments or [])),
    )


def create_assistant_message(
    conversation_id: str, text: str, model: str, token_count: int,
) -> Message:
    return Message(
        conversation_id=conversation_id,
        role="assistant",
        content=MessageContent(blocks=[TextBlock(text=text)]),
        model=model,
        token_count=token_count,
    )


def get_or_create_conversation(
    store: ConversationStore, conversation_id: str | None, model: str,
) -> tuple[Conversation, bool]:
    """Return ``(conversation, is_new)``; unknown ids start a new one."""
    if conversation_id:
        existing = store.get(conversation_id)
        if existing is not None:
            return existing, False
        logger.info("Conversation %s not found; starting a new one", conversation_id)
    conversation = Conversation(model=model)
    store.put(conversation)
    return conversation, True


def append_message(store: ConversationStore, conversation: Conversation, message: Message) -> None:
    conversation.messages.append(message)
    conversation.updated_at = utc_now_iso()
    store.put(conversation)


def chat_history(
    messages: list[Message], limit: int = MAX_CONTEXT_MESSAGES,
) -> list[dict[str, str]]:
    """Last ``limit`` turns as chat-completion messages (text blocks only)."""
    if limit <= 0:
        return []
    return [
        {"role": m.role, "content": m.content.text}
        for m in messages[-limit:]
        if m.content.text
    ]
