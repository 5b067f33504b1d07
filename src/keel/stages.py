"""Pipeline stages.

Each stage performs one gated step and reports a StageResult. Stages share a
mutable ``StageContext`` that carries what earlier stages produced (artifact,
backup, health result) to later ones.

A stage either returns a result or raises; the controller turns exceptions
into failed results. Stages never retry.
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from keel.errors import KeelError
from keel.health import HealthProbe
from keel.registry import ImageRegistry
from keel.runner import CommandRunner
from keel.schemas.config import PipelineConfig, ScannerConfig
from keel.schemas.pipeline import (
    Artifact,
    BackupReference,
    HealthCheckResult,
    ImageReference,
    PipelineRun,
    RollbackRecord,
    StageName,
    StageResult,
    StageStatus,
)
from keel.target import DeploymentTarget

logger = structlog.get_logger(__name__)


@dataclass
class StageContext:
    """State shared by the stages of one pipeline run.

    Attributes:
        config: Pipeline configuration.
        run: Trigger metadata.
        runner: Command runner for the controller host.
        registry: Image build/publish client.
        target: Deployment target.
        probe: Post-deploy health probe.
        artifact: Set by Publish.
        backup: Set by Deploy (None on first deployment).
        health: Set by Validate.
        rollback: Set by Rollback.
        trace_id: Trace ID of the pipeline run span.
    """

    config: PipelineConfig
    run: PipelineRun
    runner: CommandRunner
    registry: ImageRegistry
    target: DeploymentTarget
    probe: HealthProbe
    artifact: Artifact | None = None
    backup: BackupReference | None = None
    health: HealthCheckResult | None = None
    rollback: RollbackRecord | None = None
    trace_id: str = ""

    @property
    def workspace(self) -> Path:
        return self.config.workspace

    @property
    def image(self) -> ImageReference:
        """Image reference tagged with the build number."""
        return ImageReference(
            repository=self.config.image.repository,
            tag=str(self.run.build_number),
        )


class Stage(ABC):
    """One gated pipeline step."""

    name: StageName

    def __init__(self) -> None:
        self._log = logger.bind(stage=self.name.value)

    @abstractmethod
    def execute(self, ctx: StageContext) -> StageResult:
        """Run the stage.

        Raises:
            KeelError: On failures not reported through the result.
        """

    def _result(
        self,
        status: StageStatus,
        start_time: float,
        *,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> StageResult:
        return StageResult(
            stage=self.name,
            status=status,
            duration_ms=int((time.monotonic() - start_time) * 1000),
            error=error,
            details=details or {},
        )


class BuildStage(Stage):
    """Source checkout, install/test commands and the local image build."""

    name = StageName.BUILD

    def checkout(self, ctx: StageContext) -> str | None:
        """Shallow-clone the configured ref into the workspace.

        Returns:
            The checked out commit, or None when no repository is configured.
        """
        source = ctx.config.source
        if source.repository is None:
            return None

        workspace = ctx.workspace
        timeout = ctx.config.build.timeout_seconds
        if (workspace / ".git").is_dir():
            ctx.runner.run(
                ["git", "fetch", "--depth", "1", "origin", source.ref],
                timeout_seconds=timeout,
                cwd=workspace,
            ).check()
            ctx.runner.run(
                ["git", "checkout", "--force", "FETCH_HEAD"],
                timeout_seconds=timeout,
                cwd=workspace,
            ).check()
        else:
            workspace.parent.mkdir(parents=True, exist_ok=True)
            ctx.runner.run(
                [
                    "git",
                    "clone",
                    "--depth",
                    "1",
                    "--branch",
                    source.ref,
                    source.repository,
                    str(workspace),
                ],
                timeout_seconds=timeout,
                cwd=workspace.parent,
            ).check()

        head = ctx.runner.run(["git", "rev-parse", "HEAD"], cwd=workspace)
        commit = head.stdout.strip() if head.ok else None
        self._log.info("source_checked_out", ref=source.ref, commit=commit)
        return commit

    def execute(self, ctx: StageContext) -> StageResult:
        start_time = time.monotonic()
        build = ctx.config.build
        details: dict[str, Any] = {"image": ctx.image.ref, "commands": list(build.commands)}

        commit = self.checkout(ctx)
        if commit:
            details["commit"] = commit

        for command in build.commands:
            result = ctx.runner.run(
                command,
                timeout_seconds=build.timeout_seconds,
                cwd=ctx.workspace,
            )
            if not result.ok:
                self._log.warning("build_command_failed", command=command, exit_code=result.returncode)
                return self._result(
                    StageStatus.FAILED,
                    start_time,
                    error=f"{command}: {result.error_message}",
                    details=details,
                )

        dockerfile = str(ctx.workspace / build.dockerfile) if build.dockerfile else None
        ctx.registry.build(ctx.image, context=ctx.workspace / build.context, dockerfile=dockerfile)
        return self._result(StageStatus.PASSED, start_time, details=details)


def render_scanner_command(scanner: ScannerConfig, ctx: StageContext) -> str:
    """Substitute ``{image}``, ``{build_number}`` and ``{workspace}``.

    Other braces are left untouched so shell and template syntax survive.
    """
    return (
        scanner.command.replace("{image}", ctx.image.ref)
        .replace("{build_number}", str(ctx.run.build_number))
        .replace("{workspace}", str(ctx.workspace))
    )


class VerifyStage(Stage):
    """Static analysis and vulnerability scanners.

    A failing blocking scanner fails the stage and stops the remaining
    scanners. A failing non-blocking scanner downgrades the result to WARNING.
    """

    name = StageName.VERIFY

    def execute(self, ctx: StageContext) -> StageResult:
        start_time = time.monotonic()
        scanners = ctx.config.verify.scanners
        if not scanners:
            self._log.info("verify_skipped", reason="no_scanners_configured")
            return self._result(StageStatus.SKIPPED, start_time)

        reports: list[dict[str, Any]] = []
        warnings: list[str] = []
        for scanner in scanners:
            result = ctx.runner.run(
                render_scanner_command(scanner, ctx),
                timeout_seconds=scanner.timeout_seconds,
                cwd=ctx.workspace,
            )
            report: dict[str, Any] = {
                "name": scanner.name,
                "blocking": scanner.blocking,
                "passed": result.ok,
                "duration_ms": result.duration_ms,
            }
            if not result.ok:
                report["error"] = result.error_message
            reports.append(report)

            if result.ok:
                self._log.info("scanner_passed", scanner=scanner.name, duration_ms=result.duration_ms)
                continue

            if scanner.blocking:
                self._log.warning("scanner_failed", scanner=scanner.name, blocking=True)
                return self._result(
                    StageStatus.FAILED,
                    start_time,
                    error=f"Scanner {scanner.name} failed: {result.error_message}",
                    details={"scanners": reports},
                )

            self._log.warning("scanner_failed", scanner=scanner.name, blocking=False)
            warnings.append(f"Scanner {scanner.name} failed: {result.error_message}")

        if warnings:
            return self._result(
                StageStatus.WARNING,
                start_time,
                error="; ".join(warnings),
                details={"scanners": reports},
            )
        return self._result(StageStatus.PASSED, start_time, details={"scanners": reports})


class PublishStage(Stage):
    """Tag the build-number image plus the extra tags and push them."""

    name = StageName.PUBLISH

    def execute(self, ctx: StageContext) -> StageResult:
        start_time = time.monotonic()
        image_config = ctx.config.image

        if image_config.has_credentials:
            assert image_config.username is not None and image_config.password is not None
            ctx.registry.login(
                image_config.username,
                image_config.password.get_secret_value(),
                registry=image_config.registry,
            )

        artifact = ctx.registry.publish(ctx.image, extra_tags=list(image_config.extra_tags))
        ctx.artifact = artifact
        return self._result(
            StageStatus.PASSED,
            start_time,
            details={"refs": artifact.refs, "digest": artifact.digest},
        )


class DeployStage(Stage):
    """Replace the running instance on the target with the published artifact.

    The caller must hold the target lease.
    """

    name = StageName.DEPLOY

    def execute(self, ctx: StageContext) -> StageResult:
        start_time = time.monotonic()
        if ctx.artifact is None:
            raise KeelError("Deploy requires a published artifact")

        image = ctx.artifact.image.ref
        ctx.backup = ctx.target.deploy(image)
        return self._result(
            StageStatus.PASSED,
            start_time,
            details={
                "image": image,
                "backup_image": ctx.backup.image if ctx.backup else None,
            },
        )


class ValidateStage(Stage):
    """Single post-deploy health probe."""

    name = StageName.VALIDATE

    def execute(self, ctx: StageContext) -> StageResult:
        start_time = time.monotonic()
        health = ctx.probe.check()
        ctx.health = health
        details = {"url": health.url, "status_code": health.status_code}
        if health.passed:
            return self._result(StageStatus.PASSED, start_time, details=details)
        return self._result(StageStatus.FAILED, start_time, error=health.error, details=details)


class RollbackStage(Stage):
    """Restore the backup image after a failed validation.

    Raises NoBackupAvailableError (through the target) when Deploy captured
    no backup.
    """

    name = StageName.ROLLBACK

    def execute(self, ctx: StageContext) -> StageResult:
        start_time = time.monotonic()
        failed_image = ctx.artifact.image.ref if ctx.artifact else None
        started_from = ctx.target.restore(ctx.backup)

        assert ctx.backup is not None
        reason = ctx.health.error if ctx.health and ctx.health.error else "Health check failed"
        ctx.rollback = RollbackRecord(
            rollback_id=uuid.uuid4(),
            target_name=ctx.run.target_name,
            restored_image=ctx.backup.image,
            failed_image=failed_image,
            reason=reason,
            rolled_back_at=datetime.now(timezone.utc),
            trace_id=ctx.trace_id,
        )
        self._log.info(
            "rollback_completed",
            restored_image=ctx.backup.image,
            failed_image=failed_image,
        )
        return self._result(
            StageStatus.PASSED,
            start_time,
            details={
                "restored_image": ctx.backup.image,
                "started_from": started_from,
                "failed_image": failed_image,
            },
        )


FORWARD_STAGES: tuple[type[Stage], ...] = (
    BuildStage,
    VerifyStage,
    PublishStage,
    DeployStage,
    ValidateStage,
)


__all__ = [
    "BuildStage",
    "DeployStage",
    "FORWARD_STAGES",
    "PublishStage",
    "RollbackStage",
    "Stage",
    "StageContext",
    "ValidateStage",
    "VerifyStage",
    "render_scanner_command",
]
