"""Pydantic schemas for keel configuration and pipeline runs.

See Also:
    - keel.schemas.config: keel.yaml configuration models
    - keel.schemas.pipeline: run, stage, artifact and result models
"""

from __future__ import annotations

from keel.schemas.config import (
    BuildConfig,
    DeployConfig,
    DeployStrategy,
    HealthCheckConfig,
    ImageConfig,
    NotificationConfig,
    PipelineConfig,
    ScannerConfig,
    SourceConfig,
    TargetConfig,
    VerifyConfig,
)
from keel.schemas.pipeline import (
    Artifact,
    BackupReference,
    HealthCheckResult,
    ImageReference,
    PipelineResult,
    PipelineRun,
    PipelineState,
    RollbackRecord,
    StageName,
    StageResult,
    StageStatus,
)

__all__ = [
    # Configuration
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
    "VerifyConfig",
    # Pipeline runs
    "Artifact",
    "BackupReference",
    "HealthCheckResult",
    "ImageReference",
    "PipelineResult",
    "PipelineRun",
    "PipelineState",
    "RollbackRecord",
    "StageName",
    "StageResult",
    "StageStatus",
]
