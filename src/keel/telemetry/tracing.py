"""OpenTelemetry tracing utilities for keel.

Provides the ``@traced`` decorator and the ``create_span()`` context manager
used to instrument pipeline runs and stages. Exceptions are recorded on the
span with sanitized messages and re-raised.
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

from opentelemetry.trace import Status, StatusCode, Tracer

from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracer_factory import get_tracer as _factory_get_tracer
from keel.telemetry.tracer_factory import reset_tracer
from keel.telemetry.tracer_factory import set_tracer as _factory_set_tracer

__all__ = [
    "create_span",
    "current_trace_id",
    "get_tracer",
    "record_error",
    "reset_tracer",
    "set_tracer",
    "traced",
]

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span


P = ParamSpec("P")
R = TypeVar("R")

_TRACER_NAME = "keel"


def get_tracer() -> Tracer:
    """Get the tracer instance for keel spans."""
    return _factory_get_tracer(_TRACER_NAME)


def set_tracer(tracer: Tracer | None) -> None:
    """Set the module-level tracer (for testing)."""
    _factory_set_tracer(_TRACER_NAME, tracer)


def record_error(span: Span, exc: Exception) -> None:
    """Mark the span as failed with a sanitized error message."""
    sanitized = sanitize_error_message(str(exc))
    span.set_status(Status(StatusCode.ERROR, sanitized))
    span.set_attribute("exception.type", type(exc).__name__)
    span.set_attribute("exception.message", sanitized)


def current_trace_id(span: Span) -> str:
    """Return the span's trace ID as 32-char hex, or "" for a non-recording span."""
    ctx = span.get_span_context()
    return format(ctx.trace_id, "032x") if ctx.is_valid else ""


@overload
def traced(func: Callable[P, R]) -> Callable[P, R]: ...


@overload
def traced(
    *,
    name: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    name: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator to trace function execution with an OpenTelemetry span.

    Can be used with or without arguments:
        @traced
        def my_function(): ...

        @traced(name="keel.registry.push", attributes={"registry": "docker.io"})
        def push(): ...

    Args:
        func: The function to decorate (when used without parentheses).
        name: Optional span name. Defaults to the function name.
        attributes: Optional static attributes set on every invocation.

    Returns:
        Decorated function that creates a span on each invocation.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = name if name is not None else fn.__name__

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            tracer = get_tracer()
            with tracer.start_as_current_span(
                span_name,
                record_exception=False,
                set_status_on_exception=False,
            ) as span:
                if attributes:
                    for key, value in attributes.items():
                        span.set_attribute(key, value)
                try:
                    return fn(*args, **kwargs)
                except Exception as e:
                    record_error(span, e)
                    raise

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


@contextmanager
def create_span(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a span as a context manager.

    Nested calls create parent-child relationships automatically.

    Args:
        name: The span name.
        attributes: Optional attributes to set on the span. None values are skipped.

    Yields:
        The created span for additional attribute setting.

    Examples:
        >>> with create_span("keel.pipeline.run", attributes={"keel.build_number": 42}) as span:
        ...     with create_span("keel.stage.build"):
        ...         pass
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
            record_error(span, e)
            raise
