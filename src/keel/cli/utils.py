"""CLI utility functions and error handling.

Shared helpers for the keel CLI:
- Exit code constants
- Output helpers for consistent stderr/stdout usage
- Common options (``--config``, ``--output``, logging flags)

Errors go to stderr as plain text with a non-zero exit code so that CI
runners fail the job.

Example:
    from keel.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("File not found", path=str(path))
"""

from __future__ import annotations

import functools
import json
import sys
from collections.abc import Callable
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click

from keel.config import DEFAULT_CONFIG_FILE, load_config
from keel.errors import ConfigurationError, KeelError
from keel.telemetry.logging import configure_logging

if TYPE_CHECKING:
    from typing import NoReturn

    from keel.schemas.config import PipelineConfig

F = TypeVar("F", bound=Callable[..., Any])


class ExitCode(IntEnum):
    """Exit codes for CLI commands that do not report a pipeline outcome.

    ``keel run`` exits with ``PipelineResult.exit_code`` instead, and errors
    raised by keel exit with their ``exit_code`` attribute.
    """

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage or configuration."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("File not found", path="/path/to/file")
        # Output: Error: File not found (path=/path/to/file)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code.

    Raises:
        SystemExit: Always exits with the specified code.
    """
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Warning: {message} ({context_str})"
    else:
        full_message = f"Warning: {message}"

    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr.

    Used for progress updates that should not be captured by stdout
    redirection (e.g. when ``--output json`` is piped).
    """
    click.echo(message, err=True)


def exit_with_error(exc: KeelError, output: str, prefix: str) -> NoReturn:
    """Report a keel error in the selected output format and exit with its code."""
    if output == "json":
        click.echo(json.dumps({"error": str(exc), "exit_code": exc.exit_code}))
    else:
        error(f"{prefix}: {exc}")
    sys.exit(exc.exit_code)


def load_config_or_exit(path: Path) -> PipelineConfig:
    """Load the pipeline configuration or exit with USAGE_ERROR."""
    try:
        return load_config(path)
    except ConfigurationError as e:
        error_exit(str(e), exit_code=ExitCode.USAGE_ERROR)


def config_option(func: F) -> F:
    """``--config/-c`` option pointing at keel.yaml."""
    return click.option(
        "--config",
        "-c",
        "config_path",
        type=click.Path(dir_okay=False, path_type=Path),
        default=DEFAULT_CONFIG_FILE,
        show_default=True,
        envvar="KEEL_CONFIG",
        help="Pipeline configuration file.",
    )(func)


def output_option(func: F) -> F:
    """``--output table|json`` option."""
    return click.option(
        "--output",
        "-o",
        type=click.Choice(["table", "json"], case_sensitive=False),
        default="table",
        show_default=True,
        help="Output format.",
    )(func)


def logging_options(func: F) -> F:
    """``--log-level`` and ``--json-logs`` options; configures structlog."""

    @click.option(
        "--log-level",
        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
        default="INFO",
        show_default=True,
        envvar="KEEL_LOG_LEVEL",
        help="Log level for structured logs on stderr.",
    )
    @click.option(
        "--json-logs/--console-logs",
        default=False,
        help="Render logs as JSON lines instead of console text.",
    )
    @functools.wraps(func)
    def wrapper(*args: Any, log_level: str, json_logs: bool, **kwargs: Any) -> Any:
        configure_logging(log_level=log_level.upper(), json_output=json_logs)
        return func(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


__all__: list[str] = [
    "ExitCode",
    "config_option",
    "error",
    "error_exit",
    "exit_with_error",
    "info",
    "load_config_or_exit",
    "logging_options",
    "output_option",
    "success",
    "warn",
]
