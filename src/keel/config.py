"""Load and validate ``keel.yaml``.

``${VAR}`` references anywhere in the file are expanded from the environment
before validation; an unset variable is a ConfigurationError. ``$${VAR}``
escapes the expansion and yields a literal ``${VAR}``.

A relative ``workspace`` is resolved against the directory holding the
configuration file.

Example:
    >>> config = load_config(Path("keel.yaml"))
    >>> config.image.repository
    'acme/backend-api'
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from keel.errors import ConfigurationError
from keel.schemas.config import PipelineConfig
from keel.schemas.pipeline import PipelineRun
from keel.telemetry.tracing import traced

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_FILE = "keel.yaml"

_ENV_REFERENCE = re.compile(r"\$(\$?)\{([A-Za-z_][A-Za-z0-9_]*)\}")


def expand_env(value: Any, env: Mapping[str, str], path: str | None = None) -> Any:
    """Recursively expand ``${VAR}`` references in strings.

    Raises:
        ConfigurationError: If a referenced variable is not set.
    """
    if isinstance(value, str):

        def substitute(match: re.Match[str]) -> str:
            escaped, name = match.group(1), match.group(2)
            if escaped:
                return "${" + name + "}"
            if name not in env:
                raise ConfigurationError(f"environment variable {name} is not set", path)
            return env[name]

        return _ENV_REFERENCE.sub(substitute, value)
    if isinstance(value, dict):
        return {key: expand_env(item, env, path) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item, env, path) for item in value]
    return value


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


def parse_config(
    data: Any,
    *,
    base_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
    path: str | None = None,
) -> PipelineConfig:
    """Validate already-parsed YAML data into a PipelineConfig.

    Args:
        data: Parsed YAML document.
        base_dir: Directory a relative ``workspace`` is resolved against.
        env: Environment for ``${VAR}`` expansion (defaults to os.environ).
        path: Configuration file path, for error messages.

    Raises:
        ConfigurationError: If the data is not a valid configuration.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("top-level document must be a mapping", path)

    expanded = expand_env(data, os.environ if env is None else env, path)
    try:
        config = PipelineConfig.model_validate(expanded)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e), path) from e

    if base_dir is not None and not config.workspace.is_absolute():
        config = config.model_copy(update={"workspace": (base_dir / config.workspace).resolve()})
    return config


@traced(name="keel.config.load")
def load_config(path: Path, env: Mapping[str, str] | None = None) -> PipelineConfig:
    """Load a pipeline configuration file.

    Args:
        path: Path to ``keel.yaml``.
        env: Environment for ``${VAR}`` expansion (defaults to os.environ).

    Returns:
        Validated PipelineConfig.

    Raises:
        ConfigurationError: If the file is missing, unparseable or invalid.
    """
    if not path.is_file():
        raise ConfigurationError("configuration file not found", str(path))

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML: {e}", str(path)) from e

    config = parse_config(data, base_dir=path.parent.resolve(), env=env, path=str(path))
    logger.debug("config_loaded", path=str(path), pipeline=config.name)
    return config


def github_run_url(env: Mapping[str, str]) -> str | None:
    """Build the GitHub Actions run URL from the runner environment."""
    server = env.get("GITHUB_SERVER_URL", "https://github.com")
    repository = env.get("GITHUB_REPOSITORY")
    run_id = env.get("GITHUB_RUN_ID")
    if not repository or not run_id:
        return None
    return f"{server}/{repository}/actions/runs/{run_id}"


def build_pipeline_run(
    config: PipelineConfig,
    *,
    build_number: int | None = None,
    branch: str | None = None,
    commit: str | None = None,
    run_url: str | None = None,
    env: Mapping[str, str] | None = None,
) -> PipelineRun:
    """Create the trigger metadata, falling back to CI environment variables.

    Fallbacks: ``KEEL_BUILD_NUMBER`` then ``GITHUB_RUN_NUMBER`` for the build
    number, ``GITHUB_REF_NAME`` for the branch, ``GITHUB_SHA`` for the commit
    and the GitHub Actions run URL.

    Raises:
        ConfigurationError: If no build number is available.
    """
    env = os.environ if env is None else env

    if build_number is None:
        raw = env.get("KEEL_BUILD_NUMBER") or env.get("GITHUB_RUN_NUMBER")
        if raw is None:
            raise ConfigurationError(
                "build number is required (--build-number, KEEL_BUILD_NUMBER or GITHUB_RUN_NUMBER)"
            )
        try:
            build_number = int(raw)
        except ValueError as e:
            raise ConfigurationError(f"build number must be an integer, got {raw!r}") from e

    if build_number < 1:
        raise ConfigurationError(f"build number must be >= 1, got {build_number}")

    return PipelineRun(
        build_number=build_number,
        pipeline_name=config.name,
        target_name=config.target.display_name,
        branch=branch or env.get("GITHUB_REF_NAME") or None,
        commit=commit or env.get("GITHUB_SHA") or None,
        run_url=run_url or github_run_url(env),
    )


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "build_pipeline_run",
    "expand_env",
    "github_run_url",
    "load_config",
    "parse_config",
]
