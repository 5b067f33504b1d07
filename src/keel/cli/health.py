"""``keel health``: probe the deployed service once."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from keel.cli.utils import (
    ExitCode,
    config_option,
    error,
    load_config_or_exit,
    logging_options,
    output_option,
    success,
)
from keel.health import HealthProbe


@click.command(name="health", help="Probe the health-check URL once (exit 0 if healthy).")
@config_option
@click.option("--url", default=None, help="Probe this URL instead of the configured one.")
@output_option
@logging_options
def health_command(config_path: Path, url: str | None, output: str) -> None:
    config = load_config_or_exit(config_path)
    # The startup delay only applies right after a deploy
    probe = HealthProbe(config.health.model_copy(update={"startup_delay_seconds": 0.0}))
    result = probe.check(url)

    if output == "json":
        click.echo(result.model_dump_json(indent=2))
    elif result.passed:
        success(f"Healthy: {result.url} returned {result.status_code} in {result.duration_ms}ms")
    else:
        error(f"Unhealthy: {result.error}", url=result.url)

    sys.exit(ExitCode.SUCCESS if result.passed else ExitCode.GENERAL_ERROR)


__all__: list[str] = ["health_command"]
