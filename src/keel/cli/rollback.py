"""``keel rollback``: restore the backup image outside of a pipeline run.

Example:
    $ keel rollback --config keel.yaml --reason "Memory leak in #43"
    $ keel rollback --output json
"""

from __future__ import annotations

import sys
from pathlib import Path

import click
import structlog

from keel.cli.utils import (
    config_option,
    exit_with_error,
    info,
    load_config_or_exit,
    logging_options,
    output_option,
    success,
)
from keel.controller import PipelineController
from keel.errors import KeelError
from keel.schemas.pipeline import RollbackRecord

logger = structlog.get_logger(__name__)


def format_rollback_record(record: RollbackRecord, output_format: str) -> str:
    """Format a rollback record for CLI output."""
    if output_format == "json":
        return record.model_dump_json(indent=2)

    lines = [
        "",
        f"Rollback ID:      {record.rollback_id}",
        f"Target:           {record.target_name}",
        f"Restored Image:   {record.restored_image}",
        f"Replaced Image:   {record.failed_image or '-'}",
        f"Reason:           {record.reason}",
        f"Rolled Back At:   {record.rolled_back_at.isoformat()}",
        f"Trace ID:         {record.trace_id or '-'}",
        "",
    ]
    return "\n".join(lines)


@click.command(
    name="rollback",
    help="Restore the previously deployed image on the target.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Invalid configuration
    5  - Remote command failed
    11 - No backup image on the target
    13 - Target locked by a running pipeline
""",
)
@config_option
@click.option(
    "--reason",
    "-r",
    default="Manual rollback",
    show_default=True,
    help="Reason recorded for the rollback.",
)
@output_option
@logging_options
def rollback_command(config_path: Path, reason: str, output: str) -> None:
    """Restore the backup image kept on the deployment target."""
    config = load_config_or_exit(config_path)

    if output == "table":
        info(f"Rolling back {config.deploy.container_name} on {config.target.display_name}")

    try:
        controller = PipelineController.from_config(config)
        record = controller.rollback(reason=reason)
    except KeelError as e:
        logger.error("rollback_command_failed", error_type=type(e).__name__)
        exit_with_error(e, output, "Rollback failed")

    click.echo(format_rollback_record(record, output))
    if output == "table":
        success(f"Restored {record.restored_image}")
    sys.exit(0)


__all__: list[str] = ["format_rollback_record", "rollback_command"]
