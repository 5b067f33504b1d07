"""Exception hierarchy for keel.

All exceptions inherit from KeelError, the base exception class.

Exception Hierarchy:
    KeelError (base)
    ├── ConfigurationError       # Invalid or incomplete pipeline configuration
    ├── CommandExecutionError    # External command failed or timed out
    ├── RemoteExecutionError     # Command on the deployment host failed
    ├── DeploymentError          # Deploy/rollback postcondition violated
    ├── InvalidTransitionError   # Illegal pipeline state transition
    ├── NoBackupAvailableError   # Rollback requested without a backup image
    └── TargetLockedError        # Another run holds the deployment target

Exit Codes:
    0  - Success
    1  - General error (KeelError)
    2  - Configuration error (ConfigurationError)
    3  - Command failed (CommandExecutionError)
    5  - Remote execution failed (RemoteExecutionError)
    6  - Deployment postcondition failed (DeploymentError)
    10 - Invalid state transition (InvalidTransitionError)
    11 - No backup available (NoBackupAvailableError)
    13 - Deployment target locked (TargetLockedError)

Example:
    >>> from keel.errors import NoBackupAvailableError
    >>> raise NoBackupAvailableError("prod-vps")
    Traceback (most recent call last):
        ...
    NoBackupAvailableError: No backup image available for target prod-vps
"""

from __future__ import annotations


class KeelError(Exception):
    """Base exception for all keel errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).

    Example:
        >>> try:
        ...     controller.run(pipeline_run)
        ... except KeelError as e:
        ...     sys.exit(e.exit_code)
    """

    exit_code: int = 1

    pass


class ConfigurationError(KeelError):
    """Raised when the pipeline configuration cannot be loaded or is invalid.

    Attributes:
        reason: Description of the problem.
        path: Configuration file path (if known).
        exit_code: CLI exit code (2).
    """

    exit_code: int = 2

    def __init__(self, reason: str, path: str | None = None) -> None:
        """Initialize ConfigurationError.

        Args:
            reason: Description of the problem.
            path: Configuration file path (if known).
        """
        self.reason = reason
        self.path = path

        msg = f"Invalid configuration: {reason}"
        if path:
            msg += f" (path: {path})"
        super().__init__(msg)


class CommandExecutionError(KeelError):
    """Raised when an external command exits non-zero or times out.

    Attributes:
        command: The command line that was executed.
        returncode: Process exit code (None when the command timed out).
        stderr: Captured standard error (may be empty).
        timeout_seconds: Timeout that was exceeded (if any).
        exit_code: CLI exit code (3).

    Example:
        >>> raise CommandExecutionError("docker push app:42", 1, "denied")
        Traceback (most recent call last):
            ...
        CommandExecutionError: Command failed with exit code 1: docker push app:42: denied
    """

    exit_code: int = 3

    def __init__(
        self,
        command: str,
        returncode: int | None,
        stderr: str = "",
        timeout_seconds: float | None = None,
    ) -> None:
        """Initialize CommandExecutionError.

        Args:
            command: The command line that was executed.
            returncode: Process exit code, or None on timeout.
            stderr: Captured standard error.
            timeout_seconds: Timeout that was exceeded (if any).
        """
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        self.timeout_seconds = timeout_seconds

        if returncode is None:
            msg = f"Command timed out after {timeout_seconds} seconds: {command}"
        else:
            msg = f"Command failed with exit code {returncode}: {command}"
        if stderr:
            msg += f": {stderr.strip()}"
        super().__init__(msg)


class RemoteExecutionError(KeelError):
    """Raised when a command on the deployment host fails.

    Attributes:
        host: The deployment host.
        command: The remote command line.
        returncode: Remote exit code (None on timeout or transport failure).
        stderr: Captured standard error.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5

    def __init__(
        self,
        host: str,
        command: str,
        returncode: int | None,
        stderr: str = "",
    ) -> None:
        self.host = host
        self.command = command
        self.returncode = returncode
        self.stderr = stderr

        if returncode is None:
            msg = f"Remote command on {host} did not complete: {command}"
        else:
            msg = f"Remote command on {host} exited with {returncode}: {command}"
        if stderr:
            msg += f": {stderr.strip()}"
        super().__init__(msg)


class DeploymentError(KeelError):
    """Raised when a deploy or rollback leaves the target in an unexpected state.

    Deploys are not atomic: the target keeps whatever partial state the
    executed commands produced.

    Attributes:
        target: Deployment target name.
        reason: Description of the violated postcondition.
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6

    def __init__(self, target: str, reason: str) -> None:
        self.target = target
        self.reason = reason
        super().__init__(f"Deployment to {target} failed: {reason}")


class InvalidTransitionError(KeelError):
    """Raised when the pipeline state machine is asked for an illegal move.

    Attributes:
        from_state: Current state.
        to_state: Requested state.
        reason: Why the transition is rejected.
        exit_code: CLI exit code (10).

    Example:
        >>> raise InvalidTransitionError("building", "deploying", "stages must run in order")
        Traceback (most recent call last):
            ...
        InvalidTransitionError: Invalid transition building -> deploying: stages must run in order
    """

    exit_code: int = 10

    def __init__(self, from_state: str, to_state: str, reason: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(f"Invalid transition {from_state} -> {to_state}: {reason}")


class NoBackupAvailableError(KeelError):
    """Raised when a rollback is requested but no backup image was captured.

    This happens after the first-ever deployment to a target, or when the
    deploy strategy does not capture backups.

    Attributes:
        target: Deployment target name.
        exit_code: CLI exit code (11).

    Remediation:
        Deploy a known-good build manually with 'keel run', or restore the
        previous image on the host by hand.
    """

    exit_code: int = 11

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f"No backup image available for target {target}")


class TargetLockedError(KeelError):
    """Raised when another pipeline run holds the deployment target lease.

    Attributes:
        target: Deployment target key.
        timeout_seconds: How long we waited before giving up.
        exit_code: CLI exit code (13).

    Remediation:
        Wait for the running deployment to finish, or raise
        deploy.lock_timeout_seconds in keel.yaml.
    """

    exit_code: int = 13

    def __init__(self, target: str, timeout_seconds: float) -> None:
        self.target = target
        self.timeout_seconds = timeout_seconds

        msg = (
            f"Could not acquire deployment lock for {target} "
            f"(timeout: {timeout_seconds}s). Another pipeline run may be deploying "
            f"to this target. Retry later or increase deploy.lock_timeout_seconds."
        )
        super().__init__(msg)


__all__: list[str] = [
    "CommandExecutionError",
    "ConfigurationError",
    "DeploymentError",
    "InvalidTransitionError",
    "KeelError",
    "NoBackupAvailableError",
    "RemoteExecutionError",
    "TargetLockedError",
]
