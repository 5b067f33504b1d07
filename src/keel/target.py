"""Deployment target: replace, inspect and restore the running instance.

The target is a single long-lived host running at most one instance of the
service. Two strategies are supported:

``ContainerTarget``
    One named container started with ``docker run``. Before the running
    container is removed, its image is tagged ``<container>:backup`` on the
    host and returned as the BackupReference; rollback starts a new
    container from that tag with the same network, port, environment and
    restart policy.

``ComposeTarget``
    ``docker compose pull`` + ``up -d --force-recreate --remove-orphans`` in
    a directory on the host. No backup is captured, so rollback raises
    NoBackupAvailableError.

Deploys are not atomic: a failing command leaves the host in whatever state
the preceding commands produced.
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod

import structlog

from keel.errors import DeploymentError, NoBackupAvailableError
from keel.remote import RemoteExecutor
from keel.schemas.config import DeployConfig, DeployStrategy
from keel.schemas.pipeline import BackupReference

logger = structlog.get_logger(__name__)

BACKUP_TAG_SUFFIX = "backup"


class DeploymentTarget(ABC):
    """A host that runs exactly one instance of the service.

    Attributes:
        name: Display name of the target.
        config: Deploy configuration.
        executor: Remote execution channel to the host.
    """

    def __init__(self, name: str, config: DeployConfig, executor: RemoteExecutor) -> None:
        self.name = name
        self.config = config
        self.executor = executor
        self._log = logger.bind(target=name, container=config.container_name)

    def _sudo(self) -> list[str]:
        return ["sudo"] if self.config.use_sudo else []

    def _docker(self, *args: str) -> list[str]:
        return [*self._sudo(), "docker", *args]

    @property
    def lock_key(self) -> str:
        """Key used to serialize mutations of this target."""
        return f"{self.executor.host}/{self.config.container_name}"

    @abstractmethod
    def deploy(self, image: str) -> BackupReference | None:
        """Replace the running instance with one started from ``image``.

        Returns:
            BackupReference for the replaced instance, or None if nothing was
            running (or the strategy does not capture backups).
        """

    @abstractmethod
    def restore(self, backup: BackupReference | None) -> str:
        """Replace the running instance with one started from the backup.

        Returns:
            The image reference the restored instance runs.

        Raises:
            NoBackupAvailableError: If ``backup`` is None.
        """

    @abstractmethod
    def current_image(self) -> str | None:
        """Image of the instance currently present, or None."""

    @abstractmethod
    def find_backup(self) -> BackupReference | None:
        """Look up the backup kept on the host, or None."""


class ContainerTarget(DeploymentTarget):
    """Single named container managed with plain docker commands."""

    @property
    def backup_tag(self) -> str:
        return f"{self.config.container_name}:{BACKUP_TAG_SUFFIX}"

    @property
    def _name_filter(self) -> str:
        # Anchored so that "api" does not match "api-worker"
        return f"name=^/{self.config.container_name}$"

    def _timeout(self) -> float:
        return float(self.config.timeout_seconds)

    def ensure_network(self) -> None:
        """Create the container network when it does not exist yet."""
        network = self.config.network
        if network in ("bridge", "host", "none"):
            return
        inspect = self.executor.run(
            self._docker("network", "inspect", network),
            timeout_seconds=self._timeout(),
        )
        if inspect.ok:
            return
        self._log.info("network_create", network=network)
        self.executor.check(
            self._docker("network", "create", network),
            timeout_seconds=self._timeout(),
        )

    def container_exists(self) -> bool:
        result = self.executor.check(
            self._docker("ps", "-a", "--filter", self._name_filter, "--format", "{{.Names}}"),
            timeout_seconds=self._timeout(),
        )
        return self.config.container_name in result.stdout.split()

    def running_count(self) -> int:
        result = self.executor.check(
            self._docker("ps", "-q", "--filter", self._name_filter),
            timeout_seconds=self._timeout(),
        )
        return len([line for line in result.stdout.splitlines() if line.strip()])

    def current_image(self) -> str | None:
        if not self.container_exists():
            return None
        result = self.executor.check(
            self._docker(
                "inspect",
                self.config.container_name,
                "--format",
                "{{.Config.Image}}",
            ),
            timeout_seconds=self._timeout(),
        )
        image = result.stdout.strip()
        return image or None

    def capture_backup(self) -> BackupReference | None:
        """Tag the running instance's image as the backup.

        Must run before the instance is removed.
        """
        image = self.current_image()
        if image is None:
            self._log.info("backup_skipped", reason="no_running_instance")
            return None

        self.executor.check(
            self._docker("tag", image, self.backup_tag),
            timeout_seconds=self._timeout(),
        )
        self._log.info("backup_captured", image=image, backup_tag=self.backup_tag)
        return BackupReference(image=image, backup_tag=self.backup_tag)

    def find_backup(self) -> BackupReference | None:
        result = self.executor.run(
            self._docker(
                "image",
                "inspect",
                self.backup_tag,
                "--format",
                '{{join .RepoTags ","}}',
            ),
            timeout_seconds=self._timeout(),
        )
        if not result.ok:
            return None
        tags = [t for t in result.stdout.strip().split(",") if t and t != self.backup_tag]
        return BackupReference(image=tags[0] if tags else self.backup_tag, backup_tag=self.backup_tag)

    def pull(self, image: str) -> None:
        self.executor.check(self._docker("pull", image), timeout_seconds=self._timeout())

    def remove(self) -> None:
        """Force-remove the container if present."""
        if not self.container_exists():
            self._log.info("container_remove_skipped", reason="no_existing_container")
            return
        self.executor.check(
            self._docker("rm", "-f", self.config.container_name),
            timeout_seconds=self._timeout(),
        )
        self._log.info("container_removed")

    def run_command(self, image: str) -> list[str]:
        """The ``docker run`` argv for a new instance of ``image``."""
        args = [
            "run",
            "-d",
            "--name",
            self.config.container_name,
            "--network",
            self.config.network,
            "-p",
            self.config.published_port,
        ]
        for key, value in self.config.environment.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend(["--restart", self.config.restart_policy, image])
        return self._docker(*args)

    def start(self, image: str) -> None:
        self.executor.check(self.run_command(image), timeout_seconds=self._timeout())
        self._log.info("container_started", image=image)

    def verify_single_instance(self) -> None:
        """Raise DeploymentError unless exactly one instance is running."""
        count = self.running_count()
        if count != 1:
            raise DeploymentError(
                self.name,
                f"expected 1 running instance of {self.config.container_name}, found {count}",
            )

    def deploy(self, image: str) -> BackupReference | None:
        self._log.info("deploy_started", image=image)
        self.ensure_network()
        backup = self.capture_backup()
        self.pull(image)
        self.remove()
        self.start(image)
        self.verify_single_instance()
        self._log.info(
            "deploy_completed",
            image=image,
            backup_image=backup.image if backup else None,
        )
        return backup

    def restore(self, backup: BackupReference | None) -> str:
        if backup is None:
            raise NoBackupAvailableError(self.name)
        self._log.info("restore_started", backup_tag=backup.backup_tag, image=backup.image)
        self.remove()
        self.start(backup.backup_tag)
        self.verify_single_instance()
        self._log.info("restore_completed", backup_tag=backup.backup_tag)
        return backup.backup_tag


class ComposeTarget(DeploymentTarget):
    """docker compose project in a directory on the host.

    The new image reference is exported as ``KEEL_IMAGE`` so the compose file
    can use ``image: ${KEEL_IMAGE}``.
    """

    def _timeout(self) -> float:
        return float(self.config.timeout_seconds)

    def _in_directory(self, command: str, image: str | None = None) -> list[str]:
        directory = shlex.quote(self.config.compose_directory or ".")
        env = f"KEEL_IMAGE={shlex.quote(image)} " if image else ""
        return ["sh", "-c", f"cd {directory} && {env}{command}"]

    def _compose(self, *args: str, image: str | None = None) -> list[str]:
        docker = self._docker("compose", *args)
        if image and self.config.use_sudo:
            # sudo resets the environment unless told to keep KEEL_IMAGE
            docker.insert(1, "--preserve-env=KEEL_IMAGE")
        return self._in_directory(shlex.join(docker), image)

    def deploy(self, image: str) -> BackupReference | None:
        self._log.info(
            "compose_deploy_started",
            image=image,
            directory=self.config.compose_directory,
        )
        git_pull = shlex.join([*self._sudo(), "git", "pull", "--ff-only"])
        self.executor.check(
            self._in_directory(f"if [ -d .git ]; then {git_pull}; fi"),
            timeout_seconds=self._timeout(),
        )
        self.executor.check(self._compose("pull", image=image), timeout_seconds=self._timeout())
        self.executor.check(
            self._compose("up", "-d", "--force-recreate", "--remove-orphans", image=image),
            timeout_seconds=self._timeout(),
        )
        result = self.executor.check(
            self._compose("ps", "--status", "running", "-q"),
            timeout_seconds=self._timeout(),
        )
        if not result.stdout.strip():
            raise DeploymentError(self.name, "no compose service is running after up")
        self._log.info("compose_deploy_completed", image=image)
        return None

    def restore(self, backup: BackupReference | None) -> str:
        raise NoBackupAvailableError(self.name)

    def current_image(self) -> str | None:
        result = self.executor.run(
            self._compose("config", "--images"),
            timeout_seconds=self._timeout(),
        )
        if not result.ok:
            return None
        images = result.stdout.split()
        return images[0] if images else None

    def find_backup(self) -> BackupReference | None:
        return None


def create_target(name: str, config: DeployConfig, executor: RemoteExecutor) -> DeploymentTarget:
    """Create the deployment target for the configured strategy."""
    if config.strategy is DeployStrategy.COMPOSE:
        return ComposeTarget(name, config, executor)
    return ContainerTarget(name, config, executor)


__all__ = [
    "BACKUP_TAG_SUFFIX",
    "ComposeTarget",
    "ContainerTarget",
    "DeploymentTarget",
    "create_target",
]
