"""keel: release pipeline controller.

Runs a single linear release pipeline (Build, Verify, Publish, Deploy,
Validate) against one deployment host, gating each stage on the previous
one and restoring the previously running image when the post-deploy health
check fails.

This package provides:
- PipelineController: Stage gate, target lease, rollback and notifications
- PipelineStateMachine: Explicit run state machine
- load_config: keel.yaml loading with ${VAR} expansion
- Schemas: Pydantic models for configuration and run results (keel.schemas)
- Errors: KeelError hierarchy with CLI exit codes (keel.errors)
- Telemetry: structlog configuration and OpenTelemetry spans (keel.telemetry)

Example:
    >>> from keel import PipelineController, load_config, build_pipeline_run
    >>> config = load_config(Path("keel.yaml"))
    >>> result = PipelineController.from_config(config).run(
    ...     build_pipeline_run(config, build_number=42)
    ... )
    >>> result.state
    <PipelineState.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

__version__ = "0.1.0"

from keel.config import build_pipeline_run, load_config
from keel.controller import PipelineController
from keel.errors import (
    CommandExecutionError,
    ConfigurationError,
    DeploymentError,
    InvalidTransitionError,
    KeelError,
    NoBackupAvailableError,
    RemoteExecutionError,
    TargetLockedError,
)
from keel.schemas.config import PipelineConfig
from keel.schemas.pipeline import (
    PipelineResult,
    PipelineRun,
    PipelineState,
    StageName,
    StageResult,
    StageStatus,
)
from keel.state import PipelineStateMachine

__all__: list[str] = [
    "__version__",
    "CommandExecutionError",
    "ConfigurationError",
    "DeploymentError",
    "InvalidTransitionError",
    "KeelError",
    "NoBackupAvailableError",
    "PipelineConfig",
    "PipelineController",
    "PipelineResult",
    "PipelineRun",
    "PipelineState",
    "PipelineStateMachine",
    "RemoteExecutionError",
    "StageName",
    "StageResult",
    "StageStatus",
    "TargetLockedError",
    "build_pipeline_run",
    "load_config",
]
