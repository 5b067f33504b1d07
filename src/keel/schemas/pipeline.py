"""Pipeline run schemas.

This module defines Pydantic v2 schemas for a release pipeline run: the
artifact it publishes, the backup it captures before replacing the running
instance, per-stage results and the terminal pipeline result.

Key Components:
    PipelineState: States of the pipeline state machine
    StageName: The gated stages plus the compensating rollback
    StageStatus: Stage execution result status
    ImageReference: repository:tag pair
    Artifact: Published container image
    BackupReference: Previously running image, captured before replacement
    PipelineRun: Trigger metadata for one run
    StageResult: Individual stage execution result
    HealthCheckResult: Outcome of the post-deploy probe
    RollbackRecord: Compensating action record
    PipelineResult: Terminal result of a run
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Docker tag grammar: word character first, then word characters, dots and dashes
IMAGE_TAG_PATTERN = r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$"
IMAGE_TAG_MAX_LENGTH = 128

# =============================================================================
# Enums
# =============================================================================


class PipelineState(str, Enum):
    """States of a pipeline run.

    Attributes:
        PENDING: Run created, no stage started.
        BUILDING: Checkout, tests and local image build.
        VERIFYING: Static analysis and vulnerability scans.
        PUBLISHING: Tag and push to the registry.
        DEPLOYING: Replacing the instance on the deployment target.
        VALIDATING: Post-deploy health check.
        ROLLING_BACK: Restoring the backup image after a failed health check.
        SUCCEEDED: Terminal, all stages passed.
        FAILED: Terminal, a forward stage failed.
        ROLLED_BACK: Terminal, validation failed and the backup was restored.
        ROLLBACK_FAILED: Terminal, validation failed and no backup could be restored.

    Examples:
        >>> PipelineState.ROLLED_BACK.value
        'rolled_back'
    """

    PENDING = "pending"
    BUILDING = "building"
    VERIFYING = "verifying"
    PUBLISHING = "publishing"
    DEPLOYING = "deploying"
    VALIDATING = "validating"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible from this state."""
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PipelineState.SUCCEEDED,
        PipelineState.FAILED,
        PipelineState.ROLLED_BACK,
        PipelineState.ROLLBACK_FAILED,
    }
)


class StageName(str, Enum):
    """Pipeline stages in execution order, plus the compensating rollback."""

    BUILD = "build"
    VERIFY = "verify"
    PUBLISH = "publish"
    DEPLOY = "deploy"
    VALIDATE = "validate"
    ROLLBACK = "rollback"


class StageStatus(str, Enum):
    """Stage execution result status.

    A FAILED status halts the pipeline. WARNING records a non-blocking
    failure (e.g. an advisory scanner) and lets the pipeline continue.

    Attributes:
        PASSED: Stage succeeded.
        FAILED: Stage failed (halts forward progress).
        SKIPPED: Nothing configured for this stage.
        WARNING: Stage passed with non-blocking failures.
    """

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WARNING = "warning"

    @property
    def is_success(self) -> bool:
        """Whether this status lets the next stage run."""
        return self is not StageStatus.FAILED


# =============================================================================
# Pydantic Models
# =============================================================================


class ImageReference(BaseModel):
    """A container image addressed by repository and tag.

    Examples:
        >>> ImageReference(repository="acme/backend-api", tag="42").ref
        'acme/backend-api:42'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(
        ...,
        min_length=1,
        description="Image repository (registry/namespace/name)",
    )
    tag: str = Field(
        ...,
        min_length=1,
        max_length=IMAGE_TAG_MAX_LENGTH,
        pattern=IMAGE_TAG_PATTERN,
        description="Image tag",
    )

    @property
    def ref(self) -> str:
        """Full image reference in repository:tag form."""
        return f"{self.repository}:{self.tag}"

    def with_tag(self, tag: str) -> ImageReference:
        """Return the same repository with a different tag."""
        return ImageReference(repository=self.repository, tag=tag)

    def __str__(self) -> str:
        return self.ref


class Artifact(BaseModel):
    """Published container image.

    Produced once by the Publish stage and consumed by Deploy.

    Attributes:
        image: Primary reference, tagged with the build number.
        additional_tags: Extra tags pushed for the same image (e.g. latest).
        digest: Registry digest reported by the push, when available.
        published_at: When the push completed (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: ImageReference
    additional_tags: list[str] = Field(default_factory=list)
    digest: str | None = Field(
        default=None,
        pattern=r"^sha256:[a-f0-9]{64}$",
        description="Registry digest of the pushed image",
    )
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def refs(self) -> list[str]:
        """All pushed references, primary first."""
        return [self.image.ref] + [self.image.with_tag(t).ref for t in self.additional_tags]


class BackupReference(BaseModel):
    """Image of the previously running instance, kept for compensation.

    Captured immediately before the running instance is destroyed and
    overwritten on every deployment.

    Attributes:
        image: Image the replaced instance was started from.
        backup_tag: Host-local tag pointing at the same image.
        captured_at: Capture time (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str = Field(..., min_length=1)
    backup_tag: str = Field(..., min_length=1)
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PipelineRun(BaseModel):
    """Trigger metadata for a single pipeline run.

    Examples:
        >>> run = PipelineRun(build_number=42, pipeline_name="backend-api", target_name="vps")
        >>> run.build_number
        42
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    build_number: int = Field(..., ge=1, description="Unique build number of the run")
    pipeline_name: str = Field(..., min_length=1)
    target_name: str = Field(..., min_length=1)
    branch: str | None = None
    commit: str | None = None
    run_url: str | None = None
    triggered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StageResult(BaseModel):
    """Individual stage execution result.

    Examples:
        >>> result = StageResult(stage=StageName.BUILD, status=StageStatus.PASSED, duration_ms=1500)
        >>> result.status
        <StageStatus.PASSED: 'passed'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage: StageName
    status: StageStatus
    duration_ms: int = Field(..., ge=0)
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("error")
    @classmethod
    def strip_error(cls, v: str | None) -> str | None:
        """Normalize blank error messages to None."""
        if v is not None and not v.strip():
            return None
        return v


class HealthCheckResult(BaseModel):
    """Outcome of a single health probe.

    ``status_code`` is None when no response was received.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str
    expected_status: int = 200
    status_code: int | None = None
    passed: bool
    error: str | None = None
    duration_ms: int = Field(default=0, ge=0)


class RollbackRecord(BaseModel):
    """Record of a compensating rollback.

    Attributes:
        rollback_id: Unique rollback identifier.
        target_name: Deployment target that was restored.
        restored_image: Backup tag the new instance was started from.
        failed_image: Image of the instance that was removed (if known).
        reason: Why the rollback happened.
        rolled_back_at: Completion time (UTC).
        trace_id: OpenTelemetry trace ID for correlation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rollback_id: UUID
    target_name: str = Field(..., min_length=1)
    restored_image: str = Field(..., min_length=1)
    failed_image: str | None = None
    reason: str = Field(..., min_length=1)
    rolled_back_at: datetime
    trace_id: str = ""


# Process exit codes for terminal states
_STATE_EXIT_CODES: dict[PipelineState, int] = {
    PipelineState.SUCCEEDED: 0,
    PipelineState.FAILED: 1,
    PipelineState.ROLLED_BACK: 20,
    PipelineState.ROLLBACK_FAILED: 21,
}


class PipelineResult(BaseModel):
    """Terminal result of a pipeline run.

    Attributes:
        run: Trigger metadata.
        state: Final state (always terminal).
        state_history: Every state the run passed through, in order.
        stages: Stage results in execution order.
        artifact: Published image (None if Publish did not complete).
        backup: Backup captured by Deploy (None on first deployment).
        health: Post-deploy probe result (None if Validate did not run).
        rollback: Rollback record (None if no rollback completed).
        error: Error message of the stage that ended the run.
        trace_id: OpenTelemetry trace ID of the run span.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    run: PipelineRun
    state: PipelineState
    state_history: list[PipelineState] = Field(default_factory=list)
    stages: list[StageResult] = Field(default_factory=list)
    artifact: Artifact | None = None
    backup: BackupReference | None = None
    health: HealthCheckResult | None = None
    rollback: RollbackRecord | None = None
    error: str | None = None
    started_at: datetime
    finished_at: datetime
    trace_id: str = ""

    @field_validator("state")
    @classmethod
    def validate_terminal(cls, v: PipelineState) -> PipelineState:
        """A result can only be built for a finished run."""
        if not v.is_terminal:
            raise ValueError(f"Pipeline result requires a terminal state, got {v.value}")
        return v

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    @property
    def rolled_back(self) -> bool:
        return self.state is PipelineState.ROLLED_BACK

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        return _STATE_EXIT_CODES[self.state]

    def stage(self, name: StageName) -> StageResult | None:
        """Return the result for a stage, or None if it never ran."""
        for result in self.stages:
            if result.stage is name:
                return result
        return None


__all__ = [
    "Artifact",
    "BackupReference",
    "HealthCheckResult",
    "IMAGE_TAG_MAX_LENGTH",
    "IMAGE_TAG_PATTERN",
    "ImageReference",
    "PipelineResult",
    "PipelineRun",
    "PipelineState",
    "RollbackRecord",
    "StageName",
    "StageResult",
    "StageStatus",
    "TERMINAL_STATES",
]
