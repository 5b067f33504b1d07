"""Thread-safe tracer cache for keel.

Tracers are created lazily and cached per instrumenting module name. If the
OpenTelemetry global state cannot hand out a tracer, a NoOpTracer is used so
that instrumentation never breaks a pipeline run.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

_tracers: dict[str, Tracer] = {}
_tracer_init_failed: bool = False
_lock = threading.Lock()


def get_tracer(name: str = "keel") -> Tracer:
    """Get or create the cached tracer for ``name``.

    Args:
        name: Instrumenting module name.

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
        except Exception:
            _tracer_init_failed = True
            return trace.NoOpTracer()
        _tracers[name] = tracer
        return tracer


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Set or clear the tracer for ``name`` (for testing)."""
    with _lock:
        if tracer is None:
            _tracers.pop(name, None)
        else:
            _tracers[name] = tracer


def reset_tracer() -> None:
    """Clear all cached tracers and the failure flag."""
    global _tracer_init_failed
    with _lock:
        _tracers.clear()
        _tracer_init_failed = False


__all__ = ["get_tracer", "reset_tracer", "set_tracer"]
