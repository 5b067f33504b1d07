"""Shared fixtures for keel tests.

Provides fakes for the two process boundaries keel drives:

- ``FakeRunner``: a CommandRunner that records commands instead of running them.
- ``FakeDockerHost``: a RemoteExecutor that simulates the docker CLI on a
  deployment host (containers, tags, networks) so that deploy and rollback
  run through the real target code.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
import structlog

from keel.remote import RemoteExecutor
from keel.runner import Command, CommandResult, CommandRunner, format_command
from keel.schemas.config import PipelineConfig

_NAME_FILTER = re.compile(r"^name=\^/(?P<name>[^$]+)\$$")

PUSH_DIGEST = "sha256:" + "ab" * 32


class FakeRunner(CommandRunner):
    """CommandRunner that records commands and returns scripted results.

    Commands containing a key of ``failures`` fail with the mapped stderr.
    ``docker push`` reports ``PUSH_DIGEST``.
    """

    def __init__(self, failures: dict[str, str] | None = None) -> None:
        super().__init__()
        self.failures = dict(failures or {})
        self.commands: list[str] = []
        self.inputs: list[str | None] = []

    def run(
        self,
        command: Command,
        *,
        timeout_seconds: float | None = None,
        input_text: str | None = None,
        cwd: Path | None = None,
    ) -> CommandResult:
        display = format_command(command)
        self.commands.append(display)
        self.inputs.append(input_text)
        for needle, stderr in self.failures.items():
            if needle in display:
                return CommandResult(command=display, returncode=1, stderr=stderr)
        stdout = ""
        if display.startswith("docker push"):
            tag = display.split()[-1].rsplit(":", 1)[-1]
            stdout = f"{tag}: digest: {PUSH_DIGEST} size: 1573\n"
        return CommandResult(command=display, returncode=0, stdout=stdout)


class FakeDockerHost(RemoteExecutor):
    """In-memory docker host reachable through the RemoteExecutor interface.

    Attributes:
        containers: Container name to the image reference it was started from.
        running: Names of running containers.
        tags: Local tag to the image it points at.
        networks: Existing user-defined networks.
        calls: Every argv received, in order.
        fail: docker subcommand to stderr; matching commands exit 1.
        crash_on_start: Started containers exit immediately.
        unstartable: Image reference to stderr; ``docker run`` of it exits 125.
    """

    def __init__(self, host: str = "vps.example.com") -> None:
        self.host = host
        self.containers: dict[str, str] = {}
        self.running: set[str] = set()
        self.tags: dict[str, str] = {}
        self.networks: set[str] = set()
        self.calls: list[list[str]] = []
        self.fail: dict[str, str] = {}
        self.crash_on_start = False
        self.unstartable: dict[str, str] = {}

    def seed(self, name: str, image: str) -> None:
        """Start with a container of ``image`` already running."""
        self.tags[image] = image
        self.containers[name] = image
        self.running.add(name)

    def docker_calls(self, subcommand: str) -> list[list[str]]:
        return [c for c in self.calls if _docker_args(c)[:1] == [subcommand]]

    def run(self, argv: list[str], *, timeout_seconds: float | None = None) -> CommandResult:
        self.calls.append(list(argv))
        args = _docker_args(argv)
        if args[0] in self.fail:
            return self._result(argv, 1, stderr=self.fail[args[0]])
        handler = getattr(self, f"_docker_{args[0]}")
        return handler(argv, args[1:])

    def _result(self, argv: list[str], returncode: int, stdout: str = "", stderr: str = "") -> CommandResult:
        return CommandResult(
            command=shlex.join(argv),
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
        )

    def _filtered(self, args: list[str], names: set[str] | list[str]) -> list[str]:
        match = _NAME_FILTER.match(args[args.index("--filter") + 1])
        assert match is not None
        return [n for n in names if n == match.group("name")]

    def _docker_network(self, argv: list[str], args: list[str]) -> CommandResult:
        action, network = args[0], args[1]
        if action == "inspect":
            found = network in self.networks
            return self._result(argv, 0 if found else 1, stderr="" if found else "not found")
        self.networks.add(network)
        return self._result(argv, 0, stdout=f"{network}-id\n")

    def _docker_ps(self, argv: list[str], args: list[str]) -> CommandResult:
        if "-q" in args:
            ids = [f"{n}-id" for n in self._filtered(args, sorted(self.running))]
            return self._result(argv, 0, stdout="".join(f"{i}\n" for i in ids))
        names = self._filtered(args, sorted(self.containers))
        return self._result(argv, 0, stdout="".join(f"{n}\n" for n in names))

    def _docker_inspect(self, argv: list[str], args: list[str]) -> CommandResult:
        name = args[0]
        if name not in self.containers:
            return self._result(argv, 1, stderr=f"Error: No such object: {name}")
        return self._result(argv, 0, stdout=f"{self.containers[name]}\n")

    def _docker_tag(self, argv: list[str], args: list[str]) -> CommandResult:
        source, target = args
        if source not in self.tags:
            return self._result(argv, 1, stderr=f"Error: No such image: {source}")
        self.tags[target] = self.tags[source]
        return self._result(argv, 0)

    def _docker_image(self, argv: list[str], args: list[str]) -> CommandResult:
        tag = args[1]
        if tag not in self.tags:
            return self._result(argv, 1, stderr=f"Error: No such image: {tag}")
        image = self.tags[tag]
        repo_tags = sorted(t for t, i in self.tags.items() if i == image and t != tag) + [tag]
        return self._result(argv, 0, stdout=",".join(repo_tags) + "\n")

    def _docker_pull(self, argv: list[str], args: list[str]) -> CommandResult:
        self.tags.setdefault(args[0], args[0])
        return self._result(argv, 0)

    def _docker_rm(self, argv: list[str], args: list[str]) -> CommandResult:
        name = args[-1]
        self.containers.pop(name, None)
        self.running.discard(name)
        return self._result(argv, 0)

    def _docker_run(self, argv: list[str], args: list[str]) -> CommandResult:
        name = args[args.index("--name") + 1]
        image = args[-1]
        if image not in self.tags:
            return self._result(argv, 125, stderr=f"Unable to find image '{image}' locally")
        if image in self.unstartable:
            return self._result(argv, 125, stderr=self.unstartable[image])
        if name in self.containers:
            return self._result(argv, 125, stderr=f'Conflict. The container name "/{name}" is already in use')
        self.containers[name] = image
        if not self.crash_on_start:
            self.running.add(name)
        return self._result(argv, 0, stdout=f"{name}-id\n")


def _docker_args(argv: list[str]) -> list[str]:
    args = list(argv)
    if args and args[0] == "sudo":
        args = args[1:]
    assert args[0] == "docker", argv
    return args[1:]


def make_config(**overrides: Any) -> PipelineConfig:
    """Build a valid PipelineConfig for the backend-api service."""
    data: dict[str, Any] = {
        "name": "backend-api",
        "build": {"commands": ["npm install", "npm test"]},
        "image": {"repository": "acme/backend-api"},
        "deploy": {
            "container_name": "backend-api",
            "network": "backend-api-net",
            "port": 3001,
            "environment": {"NODE_ENV": "production"},
        },
        "target": {"host": "vps.example.com", "user": "ubuntu"},
        "health": {"base_url": "https://api.example.com"},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    return PipelineConfig.model_validate(data)


def status_client(*statuses: int) -> httpx.Client:
    """httpx client whose successive GETs return the given status codes."""
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(status, request=request)

    return httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=False)


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    """CLI tests reconfigure structlog with a captured stderr; undo it."""
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def lock_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep target lock files inside the test's temporary directory."""
    directory = tmp_path / "locks"
    monkeypatch.setenv("KEEL_LOCK_DIR", str(directory))
    return directory


@pytest.fixture
def docker_host() -> FakeDockerHost:
    return FakeDockerHost()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def pipeline_config(tmp_path: Path) -> PipelineConfig:
    return make_config(workspace=str(tmp_path / "workspace"))


@pytest.fixture
def config_factory(tmp_path: Path) -> Any:
    """Factory for PipelineConfig with per-section overrides."""

    def factory(**overrides: Any) -> PipelineConfig:
        overrides.setdefault("workspace", str(tmp_path / "workspace"))
        return make_config(**overrides)

    return factory


@pytest.fixture
def health_client() -> Any:
    """Factory for httpx clients returning scripted status codes."""
    return status_client


@pytest.fixture
def runner_factory() -> Any:
    """Factory for FakeRunner with failing command substrings."""
    return FakeRunner


@pytest.fixture
def host_factory() -> Any:
    """Factory for additional FakeDockerHost instances."""
    return FakeDockerHost
