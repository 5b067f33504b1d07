"""``keel run``: execute the full release pipeline.

The process exit code is the pipeline outcome:
    0  - SUCCEEDED
    1  - FAILED (a forward stage failed)
    20 - ROLLED_BACK (validation failed, previous image restored)
    21 - ROLLBACK_FAILED (validation failed, no backup could be restored)
"""

from __future__ import annotations

import sys
from pathlib import Path

import click
import structlog

from keel.cli.utils import (
    config_option,
    error,
    exit_with_error,
    info,
    load_config_or_exit,
    logging_options,
    output_option,
    success,
    warn,
)
from keel.config import build_pipeline_run
from keel.controller import PipelineController
from keel.errors import KeelError
from keel.schemas.pipeline import PipelineResult, PipelineState

logger = structlog.get_logger(__name__)


def format_pipeline_result(result: PipelineResult, output_format: str) -> str:
    """Format a pipeline result for CLI output."""
    if output_format == "json":
        return result.model_dump_json(indent=2)

    run = result.run
    lines = [
        "",
        f"Pipeline:      {run.pipeline_name} #{run.build_number}",
        f"Target:        {run.target_name}",
        f"State:         {result.state.value}",
    ]
    if result.artifact is not None:
        lines.append(f"Image:         {result.artifact.image.ref}")
    if result.backup is not None:
        lines.append(f"Backup:        {result.backup.image}")
    if result.rollback is not None:
        lines.append(f"Restored:      {result.rollback.restored_image}")
    if result.trace_id:
        lines.append(f"Trace ID:      {result.trace_id}")
    lines.append("")
    lines.append(f"{'STAGE':<10} {'STATUS':<8} {'DURATION':>9}  ERROR")
    for stage in result.stages:
        lines.append(
            f"{stage.stage.value:<10} {stage.status.value:<8} "
            f"{stage.duration_ms / 1000:>8.1f}s  {stage.error or ''}".rstrip()
        )
    lines.append("")
    return "\n".join(lines)


@click.command(
    name="run",
    help="Run the release pipeline: build, verify, publish, deploy, validate.",
    epilog="""
Examples:
    $ keel run --config keel.yaml --build-number 42
    $ keel run --build-number 43 --branch main --output json

Exit Codes:
    0  - Succeeded
    1  - Failed
    2  - Invalid configuration
    20 - Rolled back
    21 - Rollback failed
""",
)
@config_option
@click.option(
    "--build-number",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Build number (defaults to $KEEL_BUILD_NUMBER or $GITHUB_RUN_NUMBER).",
)
@click.option("--branch", default=None, help="Branch being deployed (defaults to $GITHUB_REF_NAME).")
@click.option("--commit", default=None, help="Commit being deployed (defaults to $GITHUB_SHA).")
@click.option("--run-url", default=None, help="Link to the CI run, used in notifications.")
@output_option
@logging_options
def run_command(
    config_path: Path,
    build_number: int | None,
    branch: str | None,
    commit: str | None,
    run_url: str | None,
    output: str,
) -> None:
    """Run the release pipeline once."""
    config = load_config_or_exit(config_path)

    try:
        pipeline_run = build_pipeline_run(
            config,
            build_number=build_number,
            branch=branch,
            commit=commit,
            run_url=run_url,
        )
        controller = PipelineController.from_config(config)
        if output == "table":
            info(f"Running {config.name} #{pipeline_run.build_number} on {pipeline_run.target_name}")
        result = controller.run(pipeline_run)
    except KeelError as e:
        logger.error("run_command_failed", error_type=type(e).__name__)
        exit_with_error(e, output, "Pipeline could not start")

    click.echo(format_pipeline_result(result, output))

    if output == "table":
        if result.state is PipelineState.SUCCEEDED:
            success(f"Deployed {result.artifact.image.ref if result.artifact else config.name}")
        elif result.state is PipelineState.ROLLED_BACK:
            warn(f"Deployment rolled back: {result.error}")
        else:
            error(f"Pipeline {result.state.value}: {result.error}")

    sys.exit(result.exit_code)


__all__: list[str] = ["format_pipeline_result", "run_command"]
