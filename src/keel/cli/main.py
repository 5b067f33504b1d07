"""Main entry point for the keel CLI.

Commands:
    keel run: Run the release pipeline
    keel rollback: Restore the backup image on the target
    keel health: Probe the health-check URL once
    keel status: Show the current and backup image on the target
    keel config validate: Validate keel.yaml

Example:
    $ keel --help
    $ keel run --config keel.yaml --build-number 42
"""

from __future__ import annotations

import sys
from importlib.metadata import version as get_version

import click

from keel.cli.config_cmd import config_group
from keel.cli.health import health_command
from keel.cli.rollback import rollback_command
from keel.cli.run import run_command
from keel.cli.status import status_command


def _get_version() -> str:
    """Get the keel package version, or 'unknown' if not installed."""
    try:
        return get_version("keel")
    except Exception:
        return "unknown"


@click.group(
    name="keel",
    help="keel - release pipeline controller: build, scan, publish, deploy, verify, roll back.",
    epilog="Use 'keel <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="keel",
    message="%(prog)s %(version)s",
)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Root command group for the keel CLI."""
    ctx.ensure_object(dict)


cli.add_command(run_command)
cli.add_command(rollback_command)
cli.add_command(health_command)
cli.add_command(status_command)
cli.add_command(config_group)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the keel CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
