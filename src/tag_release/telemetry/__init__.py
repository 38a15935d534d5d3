"""Tracing and structured logging for the release pipeline.

Example:
    >>> from tag_release.telemetry import create_span
    >>> with create_span("tag_release.run_gates", {"release.tag": "v1.0.0-rc.1"}):
    ...     pass
"""

from __future__ import annotations

from tag_release.telemetry.logging import add_trace_context, configure_logging
from tag_release.telemetry.sanitization import sanitize_error_message
from tag_release.telemetry.tracing import create_span, get_tracer, reset_tracer, set_tracer

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "get_tracer",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
]
