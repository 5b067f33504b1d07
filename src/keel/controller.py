"""Pipeline controller.

Runs the five stages in order, gating each on the previous result, holds
the target lease from Deploy until the run is terminal, triggers the
compensating Rollback iff Validate failed and notifies the configured chat
channels about the outcome.

Example:
    >>> controller = PipelineController.from_config(load_config(Path("keel.yaml")))
    >>> result = controller.run(PipelineRun(build_number=42, pipeline_name="backend-api",
    ...                                     target_name="vps"))
    >>> result.state
    <PipelineState.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

import time
import uuid
from contextlib import ExitStack
from datetime import datetime, timezone
from pathlib import Path

import structlog

from keel.errors import NoBackupAvailableError, TargetLockedError
from keel.health import HealthProbe
from keel.lock import target_lock
from keel.notifications import Notifier
from keel.registry import ImageRegistry
from keel.remote import create_executor
from keel.runner import CommandRunner
from keel.schemas.config import PipelineConfig
from keel.schemas.pipeline import (
    PipelineResult,
    PipelineRun,
    PipelineState,
    RollbackRecord,
    StageName,
    StageResult,
    StageStatus,
)
from keel.stages import FORWARD_STAGES, RollbackStage, Stage, StageContext
from keel.state import STAGE_STATES, PipelineStateMachine
from keel.target import DeploymentTarget, create_target
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span, current_trace_id, record_error

logger = structlog.get_logger(__name__)


class PipelineController:
    """Executes pipeline runs for one configured pipeline and target.

    Attributes:
        config: Pipeline configuration.
        runner: Command runner for the controller host.
        registry: Image build/publish client.
        target: Deployment target.
        probe: Post-deploy health probe.
        notifier: Outcome notifier.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        runner: CommandRunner,
        registry: ImageRegistry,
        target: DeploymentTarget,
        probe: HealthProbe,
        notifier: Notifier | None = None,
        lock_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.registry = registry
        self.target = target
        self.probe = probe
        self.notifier = notifier or Notifier(config.notifications)
        self.lock_dir = lock_dir
        self.stages: list[Stage] = [stage_cls() for stage_cls in FORWARD_STAGES]
        self.rollback_stage: Stage = RollbackStage()
        self._log = logger.bind(pipeline=config.name, target=target.name)

    @classmethod
    def from_config(cls, config: PipelineConfig) -> PipelineController:
        """Wire the default collaborators for a configuration."""
        runner = CommandRunner(cwd=config.workspace)
        executor = create_executor(config.target)
        target = create_target(config.target.display_name, config.deploy, executor)
        return cls(
            config,
            runner=runner,
            registry=ImageRegistry(runner, timeout_seconds=config.build.timeout_seconds),
            target=target,
            probe=HealthProbe(config.health),
        )

    def run(self, run: PipelineRun) -> PipelineResult:
        """Execute one pipeline run to a terminal state.

        Never raises for stage failures; the outcome is in the result.

        Args:
            run: Trigger metadata.

        Returns:
            PipelineResult in a terminal state.
        """
        machine = PipelineStateMachine()
        stage_results: list[StageResult] = []
        error: str | None = None
        started_at = datetime.now(timezone.utc)
        log = self._log.bind(build_number=run.build_number)

        ctx = StageContext(
            config=self.config,
            run=run,
            runner=self.runner,
            registry=self.registry,
            target=self.target,
            probe=self.probe,
        )

        with create_span(
            "keel.pipeline.run",
            attributes={
                "keel.pipeline": run.pipeline_name,
                "keel.build_number": run.build_number,
                "keel.target": run.target_name,
                "keel.branch": run.branch,
                "keel.commit": run.commit,
            },
        ) as span:
            ctx.trace_id = current_trace_id(span)
            log.info("pipeline_started", trace_id=ctx.trace_id)

            with ExitStack() as leases:
                for stage in self.stages:
                    machine.transition(STAGE_STATES[stage.name])

                    if stage.name is StageName.DEPLOY:
                        try:
                            leases.enter_context(
                                target_lock(
                                    self.target.lock_key,
                                    self.config.deploy.lock_timeout_seconds,
                                    lock_dir=self.lock_dir,
                                )
                            )
                        except TargetLockedError as e:
                            result = StageResult(
                                stage=StageName.DEPLOY,
                                status=StageStatus.FAILED,
                                duration_ms=0,
                                error=str(e),
                            )
                            stage_results.append(result)
                            error = result.error
                            machine.transition(PipelineState.FAILED)
                            break

                    result = self._execute(stage, ctx)
                    stage_results.append(result)
                    if result.status.is_success:
                        continue

                    error = result.error
                    if stage.name is not StageName.VALIDATE:
                        machine.transition(PipelineState.FAILED)
                        break

                    machine.transition(PipelineState.ROLLING_BACK)
                    rollback_result = self._execute(self.rollback_stage, ctx)
                    stage_results.append(rollback_result)
                    if rollback_result.status.is_success:
                        machine.transition(PipelineState.ROLLED_BACK)
                    else:
                        error = rollback_result.error
                        machine.transition(PipelineState.ROLLBACK_FAILED)
                    break
                else:
                    machine.transition(PipelineState.SUCCEEDED)

            span.set_attribute("keel.state", machine.state.value)

        pipeline_result = PipelineResult(
            run=run,
            state=machine.state,
            state_history=machine.history,
            stages=stage_results,
            artifact=ctx.artifact,
            backup=ctx.backup,
            health=ctx.health,
            rollback=ctx.rollback,
            error=error,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            trace_id=ctx.trace_id,
        )

        log_method = log.info if pipeline_result.succeeded else log.error
        log_method(
            "pipeline_completed",
            state=pipeline_result.state.value,
            error=error,
            stages=[r.stage.value for r in stage_results],
        )

        self.notifier.send(pipeline_result)
        return pipeline_result

    def _execute(self, stage: Stage, ctx: StageContext) -> StageResult:
        """Run one stage in its own span, converting exceptions to a failed result."""
        with create_span(f"keel.stage.{stage.name.value}") as span:
            self._log.info("stage_started", stage=stage.name.value)
            start_time = time.monotonic()
            try:
                result = stage.execute(ctx)
            except Exception as e:
                record_error(span, e)
                error = sanitize_error_message(str(e))
                self._log.error(
                    "stage_error",
                    stage=stage.name.value,
                    error_type=type(e).__name__,
                    error=error,
                )
                return StageResult(
                    stage=stage.name,
                    status=StageStatus.FAILED,
                    duration_ms=int((time.monotonic() - start_time) * 1000),
                    error=error,
                )

            span.set_attribute("keel.stage.status", result.status.value)
            span.set_attribute("keel.stage.duration_ms", result.duration_ms)
            log_method = self._log.info if result.status.is_success else self._log.warning
            log_method(
                "stage_completed",
                stage=stage.name.value,
                status=result.status.value,
                duration_ms=result.duration_ms,
                error=result.error,
            )
            return result

    def rollback(self, reason: str = "Manual rollback") -> RollbackRecord:
        """Restore the backup image on the target outside of a pipeline run.

        Raises:
            NoBackupAvailableError: If the host has no backup image.
            TargetLockedError: If a pipeline run holds the target.
        """
        with create_span(
            "keel.rollback.manual",
            attributes={"keel.target": self.target.name},
        ) as span:
            with target_lock(
                self.target.lock_key,
                self.config.deploy.lock_timeout_seconds,
                lock_dir=self.lock_dir,
            ):
                backup = self.target.find_backup()
                if backup is None:
                    raise NoBackupAvailableError(self.target.name)
                failed_image = self.target.current_image()
                self.target.restore(backup)

            record = RollbackRecord(
                rollback_id=uuid.uuid4(),
                target_name=self.target.name,
                restored_image=backup.image,
                failed_image=failed_image,
                reason=reason,
                rolled_back_at=datetime.now(timezone.utc),
                trace_id=current_trace_id(span),
            )
            self._log.info(
                "manual_rollback_completed",
                rollback_id=str(record.rollback_id),
                restored_image=record.restored_image,
                failed_image=failed_image,
            )
            return record


__all__ = ["PipelineController"]
