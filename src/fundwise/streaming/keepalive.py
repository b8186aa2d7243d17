"""Periodic ``stream.keepalive`` frames on a daemon thread.

Started when a stream begins and stopped on every exit path, so an idle
connection is not dropped by proxies while the model is thinking.
"""

from __future__ import annotations

import logging
import threading

from ..config.settings import KEEPALIVE_INTERVAL_SECONDS
from .emitter import StreamEmitter, keepalive
from .sinks import SinkClosedError

logger = logging.getLogger(__name__)


class Keepalive:
    """Emit a keepalive every ``interval`` seconds until stopped."""

    def __init__(self, emitter: StreamEmitter, interval: float = KEEPALIVE_INTERVAL_SECONDS):
        self._emitter = emitter
        self.interval = interval
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> "Keepalive":
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run,
                name=f"keepalive-{self._emitter.message_id[:8]}",
                daemon=True,
            )
            self._thread.start()
        return self

    def stop(self) -> None:
        """Idempotent; safe to call from ``finally`` blocks."""
        self._stopped.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                keepalive(self._emitter)
            except SinkClosedError:
                logger.debug("Sink closed; keepalive stopping")
                return
            except Exception as exc:
                logger.warning("Keepalive write failed: %s", exc)
                return

    def __enter__(self) -> "Keepalive":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()
