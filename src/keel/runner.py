"""Local command execution for pipeline stages.

Every external tool keel drives (git, the project's test runner, scanners,
docker) is invoked through ``CommandRunner``. It runs one command with a
timeout, captures its output and reports the outcome as a
``CommandResult``; callers decide whether a non-zero exit is a stage failure
or an exception.

Example:
    >>> runner = CommandRunner(cwd=Path("."))
    >>> result = runner.run(["docker", "build", "-t", "app:42", "."], timeout_seconds=900)
    >>> result.ok
    True
"""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from keel.errors import CommandExecutionError
from keel.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

Command = str | list[str]


def format_command(command: Command) -> str:
    """Render a command for logs and error messages."""
    if isinstance(command, str):
        return command
    return shlex.join(command)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command.

    ``returncode`` is None when the command timed out or could not be started.
    """

    command: str
    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False
    timeout_seconds: float | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_message(self) -> str:
        """Short, sanitized description of the failure ("" on success)."""
        if self.ok:
            return ""
        if self.timed_out:
            msg = f"Command timed out after {self.timeout_seconds} seconds"
        elif self.returncode is None:
            msg = "Command could not be started"
        else:
            msg = f"Command failed with exit code {self.returncode}"
        if self.stderr.strip():
            msg = f"{msg}: {self.stderr.strip()}"
        return sanitize_error_message(msg)

    def check(self) -> CommandResult:
        """Return self on success, raise CommandExecutionError otherwise."""
        if not self.ok:
            raise CommandExecutionError(
                sanitize_error_message(self.command),
                self.returncode,
                sanitize_error_message(self.stderr),
                timeout_seconds=self.timeout_seconds if self.timed_out else None,
            )
        return self


class CommandRunner:
    """Run commands on the controller host.

    String commands run through the shell (they come from keel.yaml, e.g.
    ``npm install && npm test``). List commands run without a shell.

    Attributes:
        cwd: Working directory for commands (None = current directory).
        env: Extra environment for commands (None = inherit).
        default_timeout: Timeout used when run() is not given one.
    """

    def __init__(
        self,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        default_timeout: float = 600.0,
    ) -> None:
        self.cwd = cwd
        self.env = env
        self.default_timeout = default_timeout

    def run(
        self,
        command: Command,
        *,
        timeout_seconds: float | None = None,
        input_text: str | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            command: Shell string or argv list.
            timeout_seconds: Maximum run time. Defaults to ``default_timeout``.
            input_text: Data written to the command's stdin (e.g. a password).
            cwd: Working directory override for this command.

        Returns:
            CommandResult. Timeouts and launch errors are reported, not raised.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout
        display = format_command(command)
        workdir = cwd if cwd is not None else self.cwd
        log = logger.bind(command=sanitize_error_message(display))

        env = {**os.environ, **self.env} if self.env is not None else None

        log.debug("command_started", cwd=str(workdir) if workdir else None, timeout_seconds=timeout)
        start_time = time.monotonic()

        try:
            completed = subprocess.run(
                command,
                shell=isinstance(command, str),
                cwd=workdir,
                env=env,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            log.warning("command_timeout", duration_ms=duration_ms, timeout_seconds=timeout)
            return CommandResult(
                command=display,
                returncode=None,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                duration_ms=duration_ms,
                timed_out=True,
                timeout_seconds=timeout,
            )
        except OSError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            log.error("command_launch_failed", error=str(e))
            return CommandResult(
                command=display,
                returncode=None,
                stderr=str(e),
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        if completed.returncode == 0:
            log.debug("command_completed", duration_ms=duration_ms)
        else:
            log.warning(
                "command_failed",
                exit_code=completed.returncode,
                duration_ms=duration_ms,
            )

        return CommandResult(
            command=display,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_ms=duration_ms,
        )


def _decode(output: bytes | str | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output


__all__ = ["Command", "CommandResult", "CommandRunner", "format_command"]
