"""Outbound frame sinks for the event stream.

A sink receives fully encoded SSE frames.  ``QueueSink`` hands frames to a
web framework's streaming response (iterate it from the response thread);
``CallableSink`` forwards each frame to a function, which is what tests and
simple scripts use.  Writing to a closed sink raises ``SinkClosedError``; the
streaming orchestrator treats that as the client going away.
"""

from __future__ import annotations

import queue
import threading
from typing import Callable, Iterator, Protocol


class SinkClosedError(RuntimeError):
    """The outbound connection is gone."""


class FrameSink(Protocol):
    def write(self, frame: str) -> None: ...

    def close(self) -> None: ...


_CLOSED = object()


class QueueSink:
    """Thread-safe frame queue consumed by iteration."""

    def __init__(self, maxsize: int = 0):
        self._queue: queue.Queue = queue.Queue(maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def write(self, frame: str) -> None:
        if self._closed.is_set():
            raise SinkClosedError("sink is closed")
        self._queue.put(frame)

    def close(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[str]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


class CallableSink:
    """Forward frames to ``fn`` until closed."""

    def __init__(self, fn: Callable[[str], None]):
        self._fn = fn
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, frame: str) -> None:
        if self._closed:
            raise SinkClosedError("sink is closed")
        self._fn(frame)

    def close(self) -> None:
        self._closed = True
