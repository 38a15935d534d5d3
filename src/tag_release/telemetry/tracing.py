"""OpenTelemetry tracing for release pipeline operations.

Tracers are cached per name behind a lock with double-checked lookup. If the
OpenTelemetry global state cannot produce a tracer, a NoOpTracer is returned
so that tracing never breaks a release operation.

Example:
    >>> from tag_release.telemetry.tracing import create_span
    >>> with create_span("tag_release.promote", {"release.tag": "v1.0.0-rc.1"}) as span:
    ...     span.set_attribute("release.promoted_tag", "v1.0.0")
"""

from __future__ import annotations

import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from tag_release.telemetry.sanitization import sanitize_error_message

_TRACER_NAME = "tag_release"

_tracers: dict[str, Tracer] = {}
_tracer_init_failed: bool = False
_lock = threading.Lock()


def get_tracer(name: str = _TRACER_NAME) -> Tracer:
    """Get or create the cached tracer for ``name``.

    Returns:
        OpenTelemetry Tracer, or a NoOpTracer if initialization failed.
    """
    global _tracer_init_failed

    if name in _tracers:
        return _tracers[name]
    if _tracer_init_failed:
        return trace.NoOpTracer()

    with _lock:
        if name in _tracers:
            return _tracers[name]
        if _tracer_init_failed:
            return trace.NoOpTracer()
        try:
            tracer = trace.get_tracer(name)
        except RecursionError:
            # OTel global state corrupted (seen with some test fixtures)
            _tracer_init_failed = True
            return trace.NoOpTracer()
        _tracers[name] = tracer
        return tracer


def set_tracer(tracer: Tracer | None, name: str = _TRACER_NAME) -> None:
    """Inject a tracer (tests), or clear it with None."""
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Clear cached tracers and the failure flag."""
    global _tracer_init_failed
    with _lock:
        _tracers.clear()
        _tracer_init_failed = False


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Exceptions raised inside the block set an ERROR status carrying the
    sanitized message, then propagate unchanged.

    Args:
        name: Span name, e.g. ``"tag_release.run_gates"``.
        attributes: Attributes set on the span before the block runs.

    Yields:
        The active span.
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        name,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            sanitized = sanitize_error_message(str(e))
            span.set_status(Status(StatusCode.ERROR, sanitized))
            span.set_attribute("exception.type", type(e).__name__)
            span.set_attribute("exception.message", sanitized)
            raise


__all__ = ["create_span", "get_tracer", "reset_tracer", "set_tracer"]
