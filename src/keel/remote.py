"""Command execution on the deployment host.

Two executors share one interface:

- ``SSHExecutor`` runs commands through the ``ssh`` CLI in batch mode
  (key-based authentication, no interactive prompts).
- ``LocalExecutor`` runs them directly, for targets on the controller host.

``create_executor`` picks one from ``TargetConfig``.

Example:
    >>> executor = create_executor(TargetConfig(host="vps.example.com", user="ubuntu"))
    >>> executor.run(["docker", "ps"]).ok
    True
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod

import structlog

from keel.errors import RemoteExecutionError
from keel.runner import CommandResult, CommandRunner
from keel.schemas.config import TargetConfig
from keel.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

# ssh exits with 255 when the connection itself fails
SSH_CONNECTION_ERROR = 255


class RemoteExecutor(ABC):
    """Runs argv-style commands on a deployment host."""

    host: str

    @abstractmethod
    def run(self, argv: list[str], *, timeout_seconds: float | None = None) -> CommandResult:
        """Run a command on the host and return its result without raising."""

    def check(self, argv: list[str], *, timeout_seconds: float | None = None) -> CommandResult:
        """Run a command and raise RemoteExecutionError on failure.

        Raises:
            RemoteExecutionError: If the command exits non-zero or times out.
        """
        result = self.run(argv, timeout_seconds=timeout_seconds)
        if not result.ok:
            raise RemoteExecutionError(
                self.host,
                sanitize_error_message(shlex.join(argv)),
                result.returncode,
                sanitize_error_message(result.stderr),
            )
        return result


class LocalExecutor(RemoteExecutor):
    """Executor for a deployment target on the controller host."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self.host = "localhost"
        self._runner = runner or CommandRunner()

    def run(self, argv: list[str], *, timeout_seconds: float | None = None) -> CommandResult:
        return self._runner.run(argv, timeout_seconds=timeout_seconds)


class SSHExecutor(RemoteExecutor):
    """Executor that runs commands over the ``ssh`` CLI.

    The remote command line is quoted with ``shlex.join`` and passed after
    ``--`` so that the remote shell sees exactly the given argv.

    Attributes:
        host: Remote host name or address.
        user: Login user (None = ssh default).
        port: SSH port.
    """

    def __init__(
        self,
        host: str,
        *,
        user: str | None = None,
        port: int = 22,
        identity_file: str | None = None,
        options: dict[str, str] | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.host = host
        self.user = user
        self.port = port
        self.identity_file = identity_file
        self.options = options or {}
        self._runner = runner or CommandRunner()
        self._log = logger.bind(host=host, user=user, port=port)

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def build_command(self, argv: list[str]) -> list[str]:
        """Build the local ssh argv that runs ``argv`` on the host."""
        ssh_cmd = ["ssh", "-o", "BatchMode=yes", "-p", str(self.port)]
        if self.identity_file:
            ssh_cmd.extend(["-i", self.identity_file])
        for key, value in self.options.items():
            ssh_cmd.extend(["-o", f"{key}={value}"])
        ssh_cmd.extend([self.destination, "--", shlex.join(argv)])
        return ssh_cmd

    def run(self, argv: list[str], *, timeout_seconds: float | None = None) -> CommandResult:
        result = self._runner.run(self.build_command(argv), timeout_seconds=timeout_seconds)
        if result.returncode == SSH_CONNECTION_ERROR:
            self._log.error(
                "ssh_connection_failed",
                stderr=sanitize_error_message(result.stderr),
            )
        return result


def create_executor(target: TargetConfig, runner: CommandRunner | None = None) -> RemoteExecutor:
    """Create the executor for a deployment target.

    Args:
        target: Target configuration. Local hosts get a LocalExecutor.
        runner: Optional CommandRunner (for testing).

    Returns:
        Executor for the target.
    """
    if target.is_local:
        return LocalExecutor(runner=runner)
    return SSHExecutor(
        target.host,
        user=target.user,
        port=target.port,
        identity_file=str(target.identity_file) if target.identity_file else None,
        options=dict(target.ssh_options),
        runner=runner,
    )


__all__ = [
    "LocalExecutor",
    "RemoteExecutor",
    "SSHExecutor",
    "create_executor",
]
