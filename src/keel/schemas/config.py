"""Pipeline configuration schemas.

Pydantic v2 models for ``keel.yaml``. All models are frozen and reject
unknown keys so that typos surface as configuration errors instead of
silently falling back to defaults.

Example:
    >>> config = PipelineConfig.model_validate({
    ...     "name": "backend-api",
    ...     "image": {"repository": "acme/backend-api"},
    ...     "deploy": {"container_name": "backend-api", "network": "backend-api-net", "port": 3001},
    ...     "target": {"host": "vps.example.com", "user": "ubuntu"},
    ...     "health": {"base_url": "https://api.example.com"},
    ... })
    >>> config.health.url
    'https://api.example.com/health'
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from keel.schemas.pipeline import IMAGE_TAG_MAX_LENGTH, IMAGE_TAG_PATTERN

# Valid notification event types
VALID_NOTIFICATION_EVENTS = frozenset({"success", "failure", "rollback", "rollback_failed"})

# Docker restart policies accepted by `docker run --restart`
VALID_RESTART_POLICIES = frozenset({"no", "always", "unless-stopped", "on-failure"})

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class DeployStrategy(str, Enum):
    """How the new artifact replaces the running instance.

    Attributes:
        CONTAINER: Single named container via ``docker run`` (captures a backup).
        COMPOSE: ``docker compose pull`` + ``up --force-recreate`` in a directory.
    """

    CONTAINER = "container"
    COMPOSE = "compose"


class SourceConfig(BaseModel):
    """Source checkout. Without a repository the workspace is used as-is."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str | None = Field(default=None, description="Git URL to clone")
    ref: str = Field(default="main", min_length=1, description="Branch or tag to check out")


class BuildConfig(BaseModel):
    """Dependency install, tests and local image build."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    commands: list[str] = Field(
        default_factory=list,
        description="Install/test commands run in order in the workspace",
    )
    context: str = Field(default=".", description="Docker build context, relative to workspace")
    dockerfile: str | None = Field(default=None, description="Dockerfile path (docker default if unset)")
    timeout_seconds: int = Field(default=1800, ge=1, le=86400)


class ScannerConfig(BaseModel):
    """A static-analysis or vulnerability scanner.

    ``command`` may reference ``{image}``, ``{build_number}`` and ``{workspace}``.

    Examples:
        >>> ScannerConfig(name="trivy", command="trivy image {image}").blocking
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    blocking: bool = Field(default=True, description="Whether a failure halts the pipeline")
    timeout_seconds: int = Field(default=600, ge=1, le=86400)


class VerifyConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    scanners: list[ScannerConfig] = Field(default_factory=list)


class ImageConfig(BaseModel):
    """Registry image naming and credentials."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(..., min_length=1, description="e.g. 'acme/backend-api'")
    extra_tags: list[str] = Field(
        default_factory=lambda: ["latest"],
        description="Tags pushed in addition to the build number",
    )
    registry: str | None = Field(default=None, description="Registry host for docker login")
    username: str | None = None
    password: SecretStr | None = None

    @field_validator("extra_tags")
    @classmethod
    def validate_extra_tags(cls, v: list[str]) -> list[str]:
        """Every extra tag must be a valid docker tag."""
        invalid = [
            tag for tag in v if len(tag) > IMAGE_TAG_MAX_LENGTH or not re.match(IMAGE_TAG_PATTERN, tag)
        ]
        if invalid:
            raise ValueError(
                f"Invalid image tags: {invalid}. Tags must match {IMAGE_TAG_PATTERN} "
                f"and be at most {IMAGE_TAG_MAX_LENGTH} characters"
            )
        return v

    @model_validator(mode="after")
    def validate_credentials(self) -> ImageConfig:
        """Username and password are configured together or not at all."""
        if (self.username is None) != (self.password is None):
            raise ValueError("image.username and image.password must be set together")
        return self

    @property
    def has_credentials(self) -> bool:
        return self.username is not None and self.password is not None


class DeployConfig(BaseModel):
    """How the instance on the deployment target is replaced."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    strategy: DeployStrategy = DeployStrategy.CONTAINER
    container_name: str = Field(..., min_length=1, pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
    network: str = Field(default="bridge", min_length=1)
    port: int = Field(..., ge=1, le=65535, description="Host port")
    container_port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Container port (defaults to the host port)",
    )
    restart_policy: str = Field(default="always")
    environment: dict[str, str] = Field(default_factory=dict)
    use_sudo: bool = Field(default=False, description="Prefix docker commands with sudo")
    compose_directory: str | None = Field(
        default=None,
        description="Directory on the host holding docker-compose.yml (compose strategy)",
    )
    lock_timeout_seconds: float = Field(default=300.0, ge=0)
    timeout_seconds: int = Field(default=600, ge=1, le=86400)

    @field_validator("restart_policy")
    @classmethod
    def validate_restart_policy(cls, v: str) -> str:
        """Accept docker restart policies, including on-failure:N."""
        base = v.split(":", 1)[0]
        if base not in VALID_RESTART_POLICIES:
            raise ValueError(
                f"Invalid restart policy: {v}. Valid policies: {sorted(VALID_RESTART_POLICIES)}"
            )
        return v

    @model_validator(mode="after")
    def validate_strategy(self) -> DeployConfig:
        if self.strategy is DeployStrategy.COMPOSE and not self.compose_directory:
            raise ValueError("deploy.compose_directory is required for the compose strategy")
        return self

    @property
    def published_port(self) -> str:
        """Port mapping for ``docker run -p``."""
        return f"{self.port}:{self.container_port or self.port}"


class TargetConfig(BaseModel):
    """The deployment host and how to reach it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str | None = Field(default=None, description="Display name (defaults to host)")
    host: str = Field(..., min_length=1)
    user: str | None = None
    port: int = Field(default=22, ge=1, le=65535)
    identity_file: Path | None = None
    ssh_options: dict[str, str] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.host

    @property
    def is_local(self) -> bool:
        return self.host in LOCAL_HOSTS


class HealthCheckConfig(BaseModel):
    """Post-deploy health probe."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = Field(..., pattern=r"^https?://")
    path: str = Field(default="/health")
    expected_status: int = Field(default=200, ge=100, le=599)
    timeout_seconds: float = Field(default=10.0, gt=0, le=300)
    startup_delay_seconds: float = Field(
        default=0.0,
        ge=0,
        le=600,
        description="Fixed wait before the single probe",
    )

    @property
    def url(self) -> str:
        if not self.path:
            return self.base_url
        return self.base_url.rstrip("/") + "/" + self.path.lstrip("/")


class NotificationConfig(BaseModel):
    """Incoming-webhook notification channel (Slack compatible).

    Examples:
        >>> config = NotificationConfig(url="https://hooks.slack.com/services/T00/B00/XXX")
        >>> sorted(config.events)
        ['failure', 'rollback', 'rollback_failed', 'success']
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(..., min_length=1)
    events: list[str] = Field(
        default_factory=lambda: sorted(VALID_NOTIFICATION_EVENTS),
        min_length=1,
    )
    headers: dict[str, str] | None = None
    timeout_seconds: int = Field(default=10, ge=1, le=300)
    retry_count: int = Field(default=0, ge=0, le=10)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        """Validate all events are valid notification event types."""
        invalid = set(v) - VALID_NOTIFICATION_EVENTS
        if invalid:
            raise ValueError(
                f"Invalid event types: {invalid}. Valid types: {sorted(VALID_NOTIFICATION_EVENTS)}"
            )
        return v


class PipelineConfig(BaseModel):
    """Top-level ``keel.yaml`` configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, description="Pipeline name used in messages")
    workspace: Path = Field(default=Path("."), description="Working directory for build commands")
    source: SourceConfig = Field(default_factory=SourceConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    verify: VerifyConfig = Field(default_factory=VerifyConfig)
    image: ImageConfig
    deploy: DeployConfig
    target: TargetConfig
    health: HealthCheckConfig
    notifications: list[NotificationConfig] = Field(default_factory=list)


__all__ = [
    "BuildConfig",
    "DeployConfig",
    "DeployStrategy",
    "HealthCheckConfig",
    "ImageConfig",
    "NotificationConfig",
    "PipelineConfig",
    "ScannerConfig",
    "SourceConfig",
    "TargetConfig",
    "VALID_NOTIFICATION_EVENTS",
    "VerifyConfig",
]
