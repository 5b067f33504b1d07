"""Telemetry for keel: OpenTelemetry spans and structlog configuration.

Example:
    >>> from keel.telemetry import configure_logging, create_span
    >>> configure_logging(log_level="INFO", json_output=True)
    >>> with create_span("keel.pipeline.run"):
    ...     pass
"""

from __future__ import annotations

from keel.telemetry.logging import add_trace_context, configure_logging
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import (
    create_span,
    current_trace_id,
    get_tracer,
    record_error,
    reset_tracer,
    set_tracer,
    traced,
)

__all__ = [
    "add_trace_context",
    "configure_logging",
    "create_span",
    "current_trace_id",
    "get_tracer",
    "record_error",
    "reset_tracer",
    "sanitize_error_message",
    "set_tracer",
    "traced",
]
