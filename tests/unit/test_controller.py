"""Unit tests for PipelineController.

Runs complete pipelines against FakeRunner (controller host) and
FakeDockerHost (deployment target).
"""

from __future__ import annotations

import fcntl
import os
from typing import Any
from unittest.mock import MagicMock

import pytest

from keel.controller import PipelineController
from keel.errors import NoBackupAvailableError
from keel.health import HealthProbe
from keel.lock import lock_path_for
from keel.notifications import Notifier
from keel.registry import ImageRegistry
from keel.remote import RemoteExecutor
from keel.runner import CommandResult
from keel.schemas.config import PipelineConfig
from keel.schemas.pipeline import PipelineRun, PipelineState, StageName, StageStatus
from keel.target import ComposeTarget, ContainerTarget

S = PipelineState


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock(spec=Notifier)


@pytest.fixture
def make_controller(
    docker_host: Any,
    fake_runner: Any,
    health_client: Any,
    notifier: MagicMock,
    pipeline_config: PipelineConfig,
) -> Any:
    def factory(
        *statuses: int,
        config: PipelineConfig | None = None,
        runner: Any = None,
    ) -> PipelineController:
        config = config or pipeline_config
        runner = runner or fake_runner
        return PipelineController(
            config,
            runner=runner,
            registry=ImageRegistry(runner),
            target=ContainerTarget("vps.example.com", config.deploy, docker_host),
            probe=HealthProbe(config.health, client=health_client(*(statuses or (200,)))),
            notifier=notifier,
        )

    return factory


def _run(build_number: int) -> PipelineRun:
    return PipelineRun(
        build_number=build_number,
        pipeline_name="backend-api",
        target_name="vps.example.com",
        branch="main",
    )


class TestSuccessfulRun:
    def test_replaces_previous_build(
        self, make_controller: Any, docker_host: Any, notifier: MagicMock
    ) -> None:
        docker_host.seed("backend-api", "acme/backend-api:41")

        result = make_controller(200).run(_run(42))

        assert result.state is S.SUCCEEDED
        assert result.exit_code == 0
        assert result.error is None
        assert result.state_history == [
            S.PENDING,
            S.BUILDING,
            S.VERIFYING,
            S.PUBLISHING,
            S.DEPLOYING,
            S.VALIDATING,
            S.SUCCEEDED,
        ]
        assert [r.stage for r in result.stages] == [
            StageName.BUILD,
            StageName.VERIFY,
            StageName.PUBLISH,
            StageName.DEPLOY,
            StageName.VALIDATE,
        ]
        assert result.stage(StageName.VERIFY).status is StageStatus.SKIPPED  # type: ignore[union-attr]
        assert result.artifact is not None
        assert result.artifact.refs == ["acme/backend-api:42", "acme/backend-api:latest"]
        assert result.backup is not None
        assert result.backup.image == "acme/backend-api:41"
        assert result.rollback is None
        assert docker_host.containers == {"backend-api": "acme/backend-api:42"}
        notifier.send.assert_called_once_with(result)

    def test_first_deployment(self, make_controller: Any, docker_host: Any) -> None:
        result = make_controller(200).run(_run(1))

        assert result.state is S.SUCCEEDED
        assert result.backup is None


class TestRollback:
    def test_failed_health_check_restores_previous_build(
        self, make_controller: Any, docker_host: Any, notifier: MagicMock
    ) -> None:
        docker_host.seed("backend-api", "acme/backend-api:42")

        result = make_controller(503).run(_run(43))

        assert result.state is S.ROLLED_BACK
        assert result.exit_code == 20
        assert result.state_history[-3:] == [S.VALIDATING, S.ROLLING_BACK, S.ROLLED_BACK]
        assert result.stages[-1].stage is StageName.ROLLBACK
        assert result.stages[-1].status is StageStatus.PASSED
        assert result.error == "Health check failed with response code 503 (expected 200)"
        assert result.rollback is not None
        assert result.rollback.restored_image == "acme/backend-api:42"
        assert result.rollback.failed_image == "acme/backend-api:43"
        assert docker_host.containers == {"backend-api": "backend-api:backup"}
        assert docker_host.running == {"backend-api"}
        notifier.send.assert_called_once_with(result)

    def test_first_deployment_cannot_roll_back(self, make_controller: Any, docker_host: Any) -> None:
        result = make_controller(503).run(_run(1))

        assert result.state is S.ROLLBACK_FAILED
        assert result.exit_code == 21
        assert result.error == "No backup image available for target vps.example.com"
        assert result.rollback is None
        assert result.stages[-1].status is StageStatus.FAILED
        # The failed instance stays in place
        assert docker_host.containers == {"backend-api": "acme/backend-api:1"}

    def test_backup_that_fails_to_start_is_rollback_failure(
        self, make_controller: Any, docker_host: Any, notifier: MagicMock
    ) -> None:
        docker_host.seed("backend-api", "acme/backend-api:42")
        docker_host.unstartable["backend-api:backup"] = "OCI runtime create failed: exec format error"

        result = make_controller(503).run(_run(43))

        assert result.state is S.ROLLBACK_FAILED
        assert result.exit_code == 21
        assert result.state_history[-3:] == [S.VALIDATING, S.ROLLING_BACK, S.ROLLBACK_FAILED]
        assert result.stages[-1].stage is StageName.ROLLBACK
        assert result.stages[-1].status is StageStatus.FAILED
        assert result.error is not None
        assert result.error.startswith("Remote command on vps.example.com exited with 125")
        assert result.error.endswith("OCI runtime create failed: exec format error")
        assert "-e NODE_ENV=<REDACTED>" in result.error
        assert "production" not in result.error
        assert result.backup is not None
        assert result.rollback is None
        # Removed before the restore attempt, so nothing is left running
        assert docker_host.containers == {}
        notifier.send.assert_called_once_with(result)

    def test_compose_deployment_cannot_roll_back(
        self,
        config_factory: Any,
        fake_runner: Any,
        health_client: Any,
        notifier: MagicMock,
    ) -> None:
        config = config_factory(deploy={"strategy": "compose", "compose_directory": "/srv/backend-api"})
        executor = MagicMock(spec=RemoteExecutor)
        executor.host = "vps.example.com"
        executor.check.return_value = CommandResult(command="sh", returncode=0, stdout="abc123\n")
        controller = PipelineController(
            config,
            runner=fake_runner,
            registry=ImageRegistry(fake_runner),
            target=ComposeTarget("vps.example.com", config.deploy, executor),
            probe=HealthProbe(config.health, client=health_client(503)),
            notifier=notifier,
        )

        result = controller.run(_run(43))

        assert result.state is S.ROLLBACK_FAILED
        assert result.exit_code == 21
        assert result.backup is None
        assert result.rollback is None
        assert result.stages[-1].stage is StageName.ROLLBACK
        assert result.error == "No backup image available for target vps.example.com"
        notifier.send.assert_called_once_with(result)


class TestFailedRun:
    def test_build_failure_never_touches_target(
        self, make_controller: Any, docker_host: Any, runner_factory: Any
    ) -> None:
        runner = runner_factory({"npm test": "1 failing"})

        result = make_controller(runner=runner).run(_run(42))

        assert result.state is S.FAILED
        assert result.exit_code == 1
        assert [r.stage for r in result.stages] == [StageName.BUILD]
        assert result.state_history == [S.PENDING, S.BUILDING, S.FAILED]
        assert docker_host.calls == []
        assert result.artifact is None

    def test_blocking_scanner_stops_before_publish(
        self, make_controller: Any, config_factory: Any, runner_factory: Any
    ) -> None:
        config = config_factory(verify={"scanners": [{"name": "trivy", "command": "trivy image {image}"}]})
        runner = runner_factory({"trivy": "1 CRITICAL"})

        result = make_controller(config=config, runner=runner).run(_run(42))

        assert result.state is S.FAILED
        assert result.stages[-1].stage is StageName.VERIFY
        assert not any(c.startswith("docker push") for c in runner.commands)

    def test_deploy_exception_becomes_failed_stage(
        self, make_controller: Any, docker_host: Any
    ) -> None:
        docker_host.seed("backend-api", "acme/backend-api:41")
        docker_host.fail["pull"] = "manifest unknown"

        result = make_controller(200).run(_run(42))

        assert result.state is S.FAILED
        deploy = result.stage(StageName.DEPLOY)
        assert deploy is not None
        assert deploy.status is StageStatus.FAILED
        assert "manifest unknown" in (deploy.error or "")
        assert result.stage(StageName.VALIDATE) is None
        assert result.stage(StageName.ROLLBACK) is None

    def test_locked_target_fails_deploy(
        self, make_controller: Any, config_factory: Any, docker_host: Any
    ) -> None:
        config = config_factory(deploy={"lock_timeout_seconds": 0.2})
        controller = make_controller(200, config=config)
        path = lock_path_for(controller.target.lock_key)
        path.touch()
        fd = os.open(str(path), os.O_RDWR)
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            result = controller.run(_run(42))
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

        assert result.state is S.FAILED
        deploy = result.stage(StageName.DEPLOY)
        assert deploy is not None
        assert "Could not acquire deployment lock" in (deploy.error or "")
        assert docker_host.docker_calls("run") == []

    def test_lock_is_released_after_run(self, make_controller: Any, config_factory: Any) -> None:
        config = config_factory(deploy={"lock_timeout_seconds": 0})

        first = make_controller(200, config=config).run(_run(42))
        second = make_controller(200, config=config).run(_run(43))

        assert first.state is S.SUCCEEDED
        assert second.state is S.SUCCEEDED


class TestManualRollback:
    def test_restores_backup_on_host(self, make_controller: Any, docker_host: Any) -> None:
        docker_host.seed("backend-api", "acme/backend-api:42")
        controller = make_controller(200)
        controller.run(_run(43))

        record = controller.rollback(reason="bad release")

        assert record.restored_image == "acme/backend-api:42"
        assert record.failed_image == "acme/backend-api:43"
        assert record.reason == "bad release"
        assert docker_host.containers == {"backend-api": "backend-api:backup"}

    def test_without_backup(self, make_controller: Any, docker_host: Any) -> None:
        docker_host.seed("backend-api", "acme/backend-api:42")

        with pytest.raises(NoBackupAvailableError):
            make_controller().rollback()

        assert docker_host.containers == {"backend-api": "acme/backend-api:42"}


class TestFromConfig:
    def test_wires_collaborators(self, pipeline_config: PipelineConfig) -> None:
        controller = PipelineController.from_config(pipeline_config)

        assert isinstance(controller.target, ContainerTarget)
        assert controller.target.lock_key == "vps.example.com/backend-api"
        assert controller.probe.config == pipeline_config.health
        assert controller.registry.timeout_seconds == pipeline_config.build.timeout_seconds
