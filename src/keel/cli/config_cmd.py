"""``keel config``: configuration commands."""

from __future__ import annotations

from pathlib import Path

import click

from keel.cli.utils import config_option, load_config_or_exit, success


@click.group(name="config", help="Pipeline configuration commands.")
def config_group() -> None:
    pass


@config_group.command(name="validate", help="Load and validate keel.yaml.")
@config_option
def validate_command(config_path: Path) -> None:
    """Exit 0 if the configuration is valid, 2 otherwise."""
    config = load_config_or_exit(config_path)
    success(
        f"Configuration valid: {config.name} -> "
        f"{config.deploy.container_name} on {config.target.display_name}"
    )


__all__: list[str] = ["config_group"]
