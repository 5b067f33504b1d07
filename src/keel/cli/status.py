"""``keel status``: show what runs on the deployment target.

Reports the image of the current instance and the backup image a rollback
would restore.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
import structlog

from keel.cli.utils import (
    config_option,
    exit_with_error,
    load_config_or_exit,
    logging_options,
    output_option,
)
from keel.errors import KeelError
from keel.remote import create_executor
from keel.target import create_target

logger = structlog.get_logger(__name__)


@click.command(name="status", help="Show the current and backup image on the target.")
@config_option
@output_option
@logging_options
def status_command(config_path: Path, output: str) -> None:
    config = load_config_or_exit(config_path)

    try:
        target = create_target(
            config.target.display_name,
            config.deploy,
            create_executor(config.target),
        )
        current = target.current_image()
        backup = target.find_backup()
    except KeelError as e:
        logger.error("status_command_failed", error_type=type(e).__name__)
        exit_with_error(e, output, "Status failed")

    status = {
        "target": target.name,
        "host": config.target.host,
        "strategy": config.deploy.strategy.value,
        "container": config.deploy.container_name,
        "current_image": current,
        "backup_image": backup.image if backup else None,
        "backup_tag": backup.backup_tag if backup else None,
    }

    if output == "json":
        click.echo(json.dumps(status, indent=2))
    else:
        click.echo("")
        click.echo(f"Target:          {status['target']} ({status['host']})")
        click.echo(f"Strategy:        {status['strategy']}")
        click.echo(f"Container:       {status['container']}")
        click.echo(f"Current Image:   {current or 'not running'}")
        click.echo(f"Backup Image:    {status['backup_image'] or 'none'}")
        click.echo("")
    sys.exit(0)


__all__: list[str] = ["status_command"]
