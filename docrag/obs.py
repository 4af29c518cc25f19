"""Observability utilities: Langfuse traces and OpenTelemetry spans.

Provides:
- span: context manager opening an OpenTelemetry span. Without a configured
  tracer provider, OpenTelemetry hands out non-recording spans, so this is a
  no-op unless OTEL_CONSOLE_EXPORT is on or the host process installs its own
  provider.
- Trace: minimal Langfuse trace wrapper whose methods are no-ops when the
  LANGFUSE_* settings are not configured.

Tracing never breaks the request it observes; backend errors are logged at
debug level and dropped.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from langfuse import Langfuse
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from docrag.config import settings

logger = logging.getLogger(__name__)

_langfuse_client: Optional[Langfuse] = None
_otel_inited: bool = False


def _init_langfuse() -> Optional[Langfuse]:
    """Initialize and memoize a Langfuse client if configuration is present.

    Returns:
        Optional[Langfuse]: A client when LANGFUSE_HOST, LANGFUSE_PUBLIC_KEY and
            LANGFUSE_SECRET_KEY are all set; otherwise None.
    """
    global _langfuse_client
    if _langfuse_client is not None:
        return _langfuse_client
    if settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY:
        _langfuse_client = Langfuse(
            host=settings.LANGFUSE_HOST,
            public_key=settings.LANGFUSE_PUBLIC_KEY,
            secret_key=settings.LANGFUSE_SECRET_KEY,
        )
        return _langfuse_client
    return None


def _init_otel() -> None:
    """Install a console-exporting tracer provider once, when enabled."""
    global _otel_inited
    if _otel_inited:
        return
    _otel_inited = True
    if not settings.OTEL_CONSOLE_EXPORT:
        return
    tp = TracerProvider()
    tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """Open an OpenTelemetry span around the enclosed block.

    Exceptions raised by the block are recorded on the span and re-raised.
    """
    _init_otel()
    tracer = trace.get_tracer("docrag")
    with tracer.start_as_current_span(name, attributes=_clean(attributes)):
        yield


def _clean(attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # OTel attribute values must be primitives; None is not allowed
    if not attributes:
        return {}
    return {k: v for k, v in attributes.items() if isinstance(v, (str, bool, int, float))}


class Trace:
    """Minimal wrapper for a Langfuse trace with safe no-op methods if not configured."""

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        """Create a trace that wraps optional Langfuse state.

        Args:
            name: Logical name of the trace.
            input: Initial input payload to attach to the trace.
        """
        self.name = name
        self.enabled = False
        self._root = None
        client = _init_langfuse()
        if client is not None:
            try:
                self._root = client.start_span(name=name, input=input or {})
                self.enabled = True
            except Exception as exc:
                logger.debug("Langfuse trace %s not started: %r", name, exc)

    def event(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Record a structured event on the trace if Langfuse is enabled."""
        if not self.enabled:
            return
        try:
            self._root.start_span(name=name, input=data or {}).end()
        except Exception as exc:
            logger.debug("Langfuse event %s dropped: %r", name, exc)

    def generation(
        self,
        name: str,
        prompt: str,
        output: str,
        model: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a generation with input/output text and optional metadata."""
        if not self.enabled:
            return
        try:
            self._root.start_generation(
                name=name,
                input=prompt,
                output=output,
                model=model or settings.OPENAI_MODEL,
                metadata=metadata or {},
            ).end()
        except Exception as exc:
            logger.debug("Langfuse generation %s dropped: %r", name, exc)

    def end(self, output: Optional[Dict[str, Any]] = None) -> None:
        """Finalize the trace, optionally updating a final output payload."""
        if not self.enabled:
            return
        try:
            self._root.update(output=output or {})
            self._root.end()
        except Exception as exc:
            logger.debug("Langfuse trace %s not closed: %r", self.name, exc)
        self.enabled = False
