"""Container image build, tag and push via the docker CLI.

Example:
    >>> registry = ImageRegistry(CommandRunner(cwd=Path(".")))
    >>> image = ImageReference(repository="acme/backend-api", tag="42")
    >>> registry.build(image, context=Path("."))
    >>> artifact = registry.publish(image, extra_tags=["latest"])
    >>> artifact.refs
    ['acme/backend-api:42', 'acme/backend-api:latest']
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path

import structlog

from keel.runner import CommandRunner
from keel.schemas.pipeline import Artifact, ImageReference

logger = structlog.get_logger(__name__)

# `docker push` prints "<tag>: digest: sha256:<hex> size: <n>"
_PUSH_DIGEST_PATTERN = re.compile(r"digest:\s*(sha256:[a-f0-9]{64})")


def parse_push_digest(output: str) -> str | None:
    """Extract the manifest digest from ``docker push`` output."""
    match = _PUSH_DIGEST_PATTERN.search(output)
    return match.group(1) if match else None


class ImageRegistry:
    """Builds images locally and publishes them to a registry.

    All methods raise CommandExecutionError when the docker command fails.

    Attributes:
        runner: CommandRunner used for docker invocations.
        timeout_seconds: Timeout for each docker command.
    """

    def __init__(self, runner: CommandRunner, timeout_seconds: float = 1800.0) -> None:
        self.runner = runner
        self.timeout_seconds = timeout_seconds

    def build(
        self,
        image: ImageReference,
        context: Path,
        dockerfile: str | None = None,
    ) -> None:
        """Build ``image`` from a local build context."""
        cmd = ["docker", "build", "-t", image.ref]
        if dockerfile:
            cmd.extend(["-f", dockerfile])
        cmd.append(str(context))
        logger.info("image_build_started", image=image.ref, context=str(context))
        self.runner.run(cmd, timeout_seconds=self.timeout_seconds).check()
        logger.info("image_build_completed", image=image.ref)

    def login(self, username: str, password: str, registry: str | None = None) -> None:
        """Log in to the registry. The password is passed on stdin."""
        cmd = ["docker", "login", "--username", username, "--password-stdin"]
        if registry:
            cmd.append(registry)
        self.runner.run(cmd, timeout_seconds=self.timeout_seconds, input_text=password).check()
        logger.info("registry_login_completed", registry=registry or "docker.io", username=username)

    def tag(self, source: ImageReference, target: ImageReference) -> None:
        if source == target:
            return
        self.runner.run(
            ["docker", "tag", source.ref, target.ref],
            timeout_seconds=self.timeout_seconds,
        ).check()

    def push(self, image: ImageReference) -> str | None:
        """Push one tag and return the manifest digest if docker reported it."""
        result = self.runner.run(
            ["docker", "push", image.ref],
            timeout_seconds=self.timeout_seconds,
        ).check()
        digest = parse_push_digest(result.stdout)
        logger.info("image_pushed", image=image.ref, digest=digest)
        return digest

    def publish(self, image: ImageReference, extra_tags: list[str] | None = None) -> Artifact:
        """Tag and push ``image`` plus every extra tag.

        Args:
            image: Locally built image, tagged with the build number.
            extra_tags: Additional tags for the same image (e.g. "latest").

        Returns:
            Artifact describing what was pushed.
        """
        tags = [t for t in (extra_tags or []) if t != image.tag]
        digest = self.push(image)
        for tag in tags:
            alias = image.with_tag(tag)
            self.tag(image, alias)
            self.push(alias)

        return Artifact(
            image=image,
            additional_tags=tags,
            digest=digest,
            published_at=datetime.now(timezone.utc),
        )


__all__ = ["ImageRegistry", "parse_push_digest"]
