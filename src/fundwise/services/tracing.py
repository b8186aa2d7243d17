"""Lightweight Langfuse tracing helpers.

If Langfuse keys are not set the helpers become no-ops so the pipeline runs
cleanly without observability configured.  The client is built lazily on the
first ``Tracer.start`` so importing the package never touches the network.

Uses the imperative Langfuse Python SDK span API:
  - ``Langfuse.start_span(name)`` creates a root span + auto-trace
  - ``LangfuseSpan.start_span(name)`` creates a nested child span
  - ``LangfuseSpan.update(output=…)`` attaches data
  - ``LangfuseSpan.end()`` closes the span
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Generator

from langfuse import Langfuse

from ..config.settings import LANGFUSE_HOST, LANGFUSE_PUBLIC_KEY, LANGFUSE_SECRET_KEY

logger = logging.getLogger(__name__)

_client: Langfuse | None = None
_client_checked = False
_client_lock = threading.Lock()


def get_langfuse() -> Langfuse | None:
    """Return the shared client, or None when tracing is disabled."""
    global _client, _client_checked
    with _client_lock:
        if _client_checked:
            return _client
        _client_checked = True
        if not (LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY):
            logger.info("Langfuse keys not set – tracing disabled")
            return None
        try:
            client = Langfuse(
                public_key=LANGFUSE_PUBLIC_KEY,
                secret_key=LANGFUSE_SECRET_KEY,
                host=LANGFUSE_HOST,
            )
            if client.auth_check():
                logger.info("Langfuse tracing enabled (auth OK)")
                _client = client
            else:
                logger.warning("Langfuse auth check failed – tracing disabled")
        except Exception as exc:
            logger.warning("Langfuse unavailable – tracing disabled: %s", exc)
        return _client


class Tracer:
    """Thin wrapper around a Langfuse trace / span tree.

    Usage::

        tracer = Tracer.start("pipeline_run", metadata={...})
        with tracer.span("classification") as sp:
            sp.update(output={"in_domain": True})
        tracer.end(output=response.to_dict())

    Child spans created via ``tracer.span(...)`` nest under the root so each
    pipeline stage shows up as one span in Langfuse.
    """

    def __init__(self, root_span: Any | None = None):
        self._root = root_span
        self._trace_id: str | None = None
        if root_span is not None:
            self._trace_id = root_span.trace_id

    @classmethod
    def start(
        cls,
        name: str,
        *,
        user_id: str = "",
        metadata: dict | None = None,
    ) -> "Tracer":
        client = get_langfuse()
        if client is None:
            return cls(None)
        try:
            root = client.start_span(name=name, metadata=metadata or {})
            root.update_trace(
                name=name,
                user_id=user_id or None,
                metadata=metadata or {},
            )
            logger.debug("Langfuse trace started: %s", root.trace_id)
            return cls(root)
        except Exception as exc:
            logger.warning("Langfuse trace start error: %s", exc)
            return cls(None)

    @contextmanager
    def span(self, name: str, **kwargs) -> Generator["_Span", None, None]:
        """Create a child span nested under the root."""
        sp = _Span.create(name, parent=self._root, **kwargs)
        try:
            yield sp
        except Exception as exc:
            sp.update(level="ERROR", status_message=str(exc))
            raise
        finally:
            sp.finish()

    def end(self, *, output: Any = None):
        if self._root is not None:
            try:
                if output is not None:
                    self._root.update(output=output)
                self._root.end()
            except Exception as exc:
                logger.debug("Langfuse root span end error: %s", exc)
        client = _client
        if client is not None:
            try:
                client.flush()
            except Exception as exc:
                logger.debug("Langfuse flush error: %s", exc)

    @property
    def trace_id(self) -> str | None:
        return self._trace_id


class _Span:
    """One span inside a trace."""

    def __init__(self, name: str, lang_span: Any | None = None):
        self.name = name
        self._span = lang_span

    @classmethod
    def create(cls, name: str, parent: Any | None = None, **kwargs) -> "_Span":
        if parent is None:
            return cls(name, None)
        try:
            child = parent.start_span(name=name, metadata=kwargs.get("metadata"))
            return cls(name, child)
        except Exception as exc:
            logger.debug("Langfuse child span error (%s): %s", name, exc)
            return cls(name, None)

    def update(self, **kwargs):
        if self._span is not None:
            try:
                self._span.update(**kwargs)
            except Exception as exc:
                logger.debug("Langfuse span update error (%s): %s", self.name, exc)

    def finish(self):
        if self._span is not None:
            try:
                self._span.end()
            except Exception as exc:
                logger.debug("Langfuse span end error (%s): %s", self.name, exc)
