"""Unit tests for the keel CLI.

The controller is patched out; these tests cover argument handling, output
formats and exit codes.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest
from click.testing import CliRunner

from keel.cli.main import cli
from keel.errors import NoBackupAvailableError, TargetLockedError
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

KEEL_YAML = """\
name: backend-api
build:
  commands:
    - npm install
    - npm test
image:
  repository: acme/backend-api
deploy:
  container_name: backend-api
  network: backend-api-net
  port: 3001
target:
  host: vps.example.com
  user: ubuntu
health:
  base_url: https://api.example.com
"""


def extract_json_from_output(output: str) -> dict[str, Any]:
    """Extract the JSON object from CLI output that may contain log lines."""
    start = output.find("{")
    depth = 0
    for i, char in enumerate(output[start:], start):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return json.loads(output[start : i + 1])
    return json.loads(output[start:])


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "keel.yaml"
    path.write_text(KEEL_YAML)
    return path


@pytest.fixture
def ci_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove CI variables that would otherwise fill in run metadata."""
    for name in ("KEEL_BUILD_NUMBER", "GITHUB_RUN_NUMBER", "GITHUB_REF_NAME", "GITHUB_SHA", "GITHUB_RUN_ID"):
        monkeypatch.delenv(name, raising=False)


def _pipeline_result(state: PipelineState, build_number: int = 42) -> PipelineResult:
    now = datetime.now(timezone.utc)
    stages = [StageResult(stage=StageName.BUILD, status=StageStatus.PASSED, duration_ms=1200)]
    error = None
    rollback = None
    if state is PipelineState.ROLLED_BACK:
        error = "Health check failed with response code 503 (expected 200)"
        stages.append(StageResult(stage=StageName.VALIDATE, status=StageStatus.FAILED, duration_ms=80, error=error))
        rollback = RollbackRecord(
            rollback_id=uuid.uuid4(),
            target_name="vps.example.com",
            restored_image="acme/backend-api:42",
            failed_image="acme/backend-api:43",
            reason=error,
            rolled_back_at=now,
        )
    elif state is not PipelineState.SUCCEEDED:
        error = "npm test: Command failed with exit code 1"
    return PipelineResult(
        run=PipelineRun(build_number=build_number, pipeline_name="backend-api", target_name="vps.example.com"),
        state=state,
        stages=stages,
        artifact=Artifact(image=ImageReference(repository="acme/backend-api", tag=str(build_number))),
        rollback=rollback,
        error=error,
        started_at=now,
        finished_at=now,
    )


@pytest.fixture
def mock_controller() -> Any:
    with patch("keel.cli.run.PipelineController") as controller_cls:
        controller = MagicMock()
        controller_cls.from_config.return_value = controller
        yield controller


class TestCliBasic:
    def test_help_lists_commands(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "rollback", "health", "status", "config"):
            assert command in result.output


class TestRunCommand:
    @pytest.mark.parametrize(
        ("state", "exit_code"),
        [
            (PipelineState.SUCCEEDED, 0),
            (PipelineState.FAILED, 1),
            (PipelineState.ROLLED_BACK, 20),
            (PipelineState.ROLLBACK_FAILED, 21),
        ],
    )
    def test_exit_code_is_pipeline_outcome(
        self,
        cli_runner: CliRunner,
        config_file: Path,
        mock_controller: MagicMock,
        state: PipelineState,
        exit_code: int,
    ) -> None:
        mock_controller.run.return_value = _pipeline_result(state)

        result = cli_runner.invoke(cli, ["run", "-c", str(config_file), "-n", "42"])

        assert result.exit_code == exit_code
        assert f"State:         {state.value}" in result.output

    def test_table_output(
        self, cli_runner: CliRunner, config_file: Path, mock_controller: MagicMock
    ) -> None:
        mock_controller.run.return_value = _pipeline_result(PipelineState.ROLLED_BACK, build_number=43)

        result = cli_runner.invoke(cli, ["run", "-c", str(config_file), "-n", "43", "--branch", "main"])

        assert "Restored:      acme/backend-api:42" in result.output
        assert "validate   failed" in result.output
        assert "Deployment rolled back" in result.output
        pipeline_run = mock_controller.run.call_args.args[0]
        assert pipeline_run.build_number == 43
        assert pipeline_run.branch == "main"
        assert pipeline_run.target_name == "vps.example.com"

    def test_json_output(
        self, cli_runner: CliRunner, config_file: Path, mock_controller: MagicMock
    ) -> None:
        mock_controller.run.return_value = _pipeline_result(PipelineState.SUCCEEDED)

        result = cli_runner.invoke(cli, ["run", "-c", str(config_file), "-n", "42", "-o", "json"])

        assert result.exit_code == 0
        data = extract_json_from_output(result.output)
        assert data["state"] == "succeeded"
        assert data["run"]["build_number"] == 42

    def test_build_number_from_environment(
        self, cli_runner: CliRunner, config_file: Path, mock_controller: MagicMock, ci_env: None
    ) -> None:
        mock_controller.run.return_value = _pipeline_result(PipelineState.SUCCEEDED, build_number=7)

        result = cli_runner.invoke(
            cli,
            ["run", "-c", str(config_file)],
            env={"GITHUB_RUN_NUMBER": "7", "GITHUB_REF_NAME": "main"},
        )

        assert result.exit_code == 0
        pipeline_run = mock_controller.run.call_args.args[0]
        assert pipeline_run.build_number == 7
        assert pipeline_run.branch == "main"

    def test_missing_build_number(
        self, cli_runner: CliRunner, config_file: Path, mock_controller: MagicMock, ci_env: None
    ) -> None:
        result = cli_runner.invoke(cli, ["run", "-c", str(config_file)])

        assert result.exit_code == 2
        assert "build number is required" in result.output
        mock_controller.run.assert_not_called()

    def test_rejects_zero_build_number(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(cli, ["run", "-c", str(config_file), "-n", "0"])

        assert result.exit_code == 2

    def test_missing_config_file(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        result = cli_runner.invoke(cli, ["run", "-c", str(tmp_path / "nope.yaml"), "-n", "42"])

        assert result.exit_code == 2
        assert "configuration file not found" in result.output


class TestRollbackCommand:
    def test_rollback(self, cli_runner: CliRunner, config_file: Path) -> None:
        record = RollbackRecord(
            rollback_id=uuid.uuid4(),
            target_name="vps.example.com",
            restored_image="acme/backend-api:42",
            failed_image="acme/backend-api:43",
            reason="Memory leak",
            rolled_back_at=datetime.now(timezone.utc),
        )
        with patch("keel.cli.rollback.PipelineController") as controller_cls:
            controller_cls.from_config.return_value.rollback.return_value = record

            result = cli_runner.invoke(
                cli, ["rollback", "-c", str(config_file), "-r", "Memory leak", "-o", "json"]
            )

        assert result.exit_code == 0
        controller_cls.from_config.return_value.rollback.assert_called_once_with(reason="Memory leak")
        assert extract_json_from_output(result.output)["restored_image"] == "acme/backend-api:42"

    @pytest.mark.parametrize(
        ("exc", "exit_code"),
        [
            (NoBackupAvailableError("vps.example.com"), 11),
            (TargetLockedError("vps.example.com/backend-api", 300), 13),
        ],
    )
    def test_errors_exit_with_their_code(
        self, cli_runner: CliRunner, config_file: Path, exc: Exception, exit_code: int
    ) -> None:
        with patch("keel.cli.rollback.PipelineController") as controller_cls:
            controller_cls.from_config.return_value.rollback.side_effect = exc

            result = cli_runner.invoke(cli, ["rollback", "-c", str(config_file)])

        assert result.exit_code == exit_code
        assert "Rollback failed" in result.output


class TestHealthCommand:
    @pytest.mark.parametrize(("passed", "exit_code"), [(True, 0), (False, 1)])
    def test_exit_code(
        self, cli_runner: CliRunner, config_file: Path, passed: bool, exit_code: int
    ) -> None:
        health = HealthCheckResult(
            url="https://api.example.com/health",
            status_code=200 if passed else 503,
            passed=passed,
            error=None if passed else "Health check failed with response code 503 (expected 200)",
        )
        with patch("keel.cli.health.HealthProbe") as probe_cls:
            probe_cls.return_value.check.return_value = health

            result = cli_runner.invoke(cli, ["health", "-c", str(config_file)])

        assert result.exit_code == exit_code
        probe_cls.return_value.check.assert_called_once_with(None)

    def test_probes_real_client(self, cli_runner: CliRunner, config_file: Path) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200)

        transport = httpx.MockTransport(handler)
        real_client = httpx.Client

        def client_factory(**kwargs: Any) -> httpx.Client:
            return real_client(transport=transport, **kwargs)

        with patch("keel.health.httpx.Client", side_effect=client_factory):
            result = cli_runner.invoke(cli, ["health", "-c", str(config_file), "-o", "json"])

        assert result.exit_code == 0
        assert extract_json_from_output(result.output)["status_code"] == 200


class TestStatusCommand:
    def test_json(self, cli_runner: CliRunner, config_file: Path) -> None:
        target = MagicMock()
        target.name = "vps.example.com"
        target.current_image.return_value = "acme/backend-api:43"
        target.find_backup.return_value = BackupReference(
            image="acme/backend-api:42", backup_tag="backend-api:backup"
        )
        with patch("keel.cli.status.create_target", return_value=target):
            result = cli_runner.invoke(cli, ["status", "-c", str(config_file), "-o", "json"])

        assert result.exit_code == 0
        assert extract_json_from_output(result.output) == {
            "target": "vps.example.com",
            "host": "vps.example.com",
            "strategy": "container",
            "container": "backend-api",
            "current_image": "acme/backend-api:43",
            "backup_image": "acme/backend-api:42",
            "backup_tag": "backend-api:backup",
        }


class TestConfigValidate:
    def test_valid(self, cli_runner: CliRunner, config_file: Path) -> None:
        result = cli_runner.invoke(cli, ["config", "validate", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid: backend-api -> backend-api on vps.example.com" in result.output

    def test_invalid(self, cli_runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "keel.yaml"
        path.write_text(KEEL_YAML.replace("port: 3001", "port: 70000"))

        result = cli_runner.invoke(cli, ["config", "validate", "-c", str(path)])

        assert result.exit_code == 2
        assert "deploy.port" in result.output
