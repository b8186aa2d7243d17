"""Event-stream bookkeeping and event builders.

``StreamEmitter`` owns one message's outbound sequence: a counter and the
currently open text block.  Sequence assignment and the frame write happen
under one lock, so a keepalive written from the timer thread can never land
on the wire out of sequence order.

Frames use the SSE text format::

    event: text.delta
    data: {"type": "text.delta", "messageId": "...", "sequence": 4, "payload": {...}}

At most one block is open at a time; opening a second block while one is
open is a caller error and is not checked here.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any

from ..models.schemas import StreamEvent, utc_now_iso
from .sinks import FrameSink

logger = logging.getLogger(__name__)

MESSAGE_STARTED = "message.started"
TEXT_BLOCK_STARTED = "text.block.started"
TEXT_DELTA = "text.delta"
TEXT_BLOCK_COMPLETED = "text.block.completed"
CONVERSATION_INFO = "conversation.info"
MESSAGE_COMPLETED = "message.completed"
MESSAGE_FAILED = "message.failed"
STREAM_KEEPALIVE = "stream.keepalive"
STREAM_END = "stream.end"


def encode_frame(event: StreamEvent) -> str:
    data = json.dumps(event.to_dict(), ensure_ascii=False)
    return f"event: {event.type}\ndata: {data}\n\n"


class StreamEmitter:
    """Sequence counter + open-block reference for one message."""

    def __init__(self, message_id: str, sink: FrameSink):
        self.message_id = message_id
        self._sink = sink
        self._sequence = 0
        self._block_id: str | None = None
        self._lock = threading.Lock()

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    @property
    def sequence(self) -> int:
        """Last sequence number handed out (0 before the first event)."""
        return self._sequence

    def open_block(self, block_id: str | None = None) -> str:
        self._block_id = block_id or uuid.uuid4().hex
        return self._block_id

    def current_block(self) -> str | None:
        return self._block_id

    def close_block(self) -> str | None:
        block_id, self._block_id = self._block_id, None
        return block_id

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> StreamEvent:
        """Assign the next sequence number and write the frame."""
        with self._lock:
            self._sequence += 1
            event = StreamEvent(
                type=event_type,
                message_id=self.message_id,
                sequence=self._sequence,
                payload=payload or {},
            )
            self._sink.write(encode_frame(event))
        logger.debug("emitted %s #%d", event_type, event.sequence)
        return event


# ── Event builders ───────────────────────────────────────────────────────

def message_started(emitter: StreamEmitter, model: str) -> StreamEvent:
    return emitter.emit(MESSAGE_STARTED, {
        "role": "assistant",
        "model": model,
        "timestamp": utc_now_iso(),
    })


def text_block_started(emitter: StreamEmitter, replaces: str | None = None) -> StreamEvent:
    payload: dict[str, Any] = {"blockId": emitter.open_block()}
    if replaces:
        payload["replaces"] = replaces
    return emitter.emit(TEXT_BLOCK_STARTED, payload)


def text_delta(emitter: StreamEmitter, text: str) -> StreamEvent:
    return emitter.emit(TEXT_DELTA, {"blockId": emitter.current_block(), "text": text})


def text_block_completed(emitter: StreamEmitter) -> StreamEvent:
    return emitter.emit(TEXT_BLOCK_COMPLETED, {"blockId": emitter.close_block()})


def message_completed(
    emitter: StreamEmitter,
    token_count: int,
    finish_reason: str = "stop",
    status: str = "success",
    result: dict[str, Any] | None = None,
) -> StreamEvent:
    payload: dict[str, Any] = {
        "tokenCount": token_count,
        "status": status,
        "finishReason": finish_reason,
    }
    if result is not None:
        payload["result"] = result
    return emitter.emit(MESSAGE_COMPLETED, payload)


def message_failed(
    emitter: StreamEmitter,
    error: str,
    code: str | None = None,
    details: Any = None,
) -> StreamEvent:
    payload: dict[str, Any] = {"error": error}
    if code is not None:
        payload["code"] = code
    if details is not None:
        payload["details"] = details
    return emitter.emit(MESSAGE_FAILED, payload)


def conversation_info(
    emitter: StreamEmitter, conversation_id: str, is_new: bool, title: str,
) -> StreamEvent:
    return emitter.emit(CONVERSATION_INFO, {
        "conversationId": conversation_id,
        "isNew": is_new,
        "title": title,
    })


def keepalive(emitter: StreamEmitter) -> StreamEvent:
    return emitter.emit(STREAM_KEEPALIVE)


def stream_end(emitter: StreamEmitter) -> StreamEvent:
    return emitter.emit(STREAM_END)
