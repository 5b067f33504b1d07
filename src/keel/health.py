"""Post-deploy health probe.

A single synchronous HTTP GET decides the Validate stage: the probe passes
iff the response status equals the expected code. Timeouts, connection
errors and any other status are definitive failures; there is no retry.

Example:
    >>> probe = HealthProbe(HealthCheckConfig(base_url="https://api.example.com"))
    >>> result = probe.check()
    >>> result.passed, result.status_code
    (True, 200)
"""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx
import structlog

from keel.schemas.config import HealthCheckConfig
from keel.schemas.pipeline import HealthCheckResult
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class HealthProbe:
    """Single-shot HTTP health check.

    Attributes:
        config: Probe configuration (URL, expected status, timeout).
    """

    def __init__(
        self,
        config: HealthCheckConfig,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._client = client
        self._sleep = sleep

    def check(self, url: str | None = None) -> HealthCheckResult:
        """Probe the endpoint once.

        Args:
            url: Override for the configured URL.

        Returns:
            HealthCheckResult; ``passed`` is True only for the expected status.
        """
        target_url = url or self.config.url
        expected = self.config.expected_status

        if self.config.startup_delay_seconds > 0:
            logger.info("health_check_waiting", delay_seconds=self.config.startup_delay_seconds)
            self._sleep(self.config.startup_delay_seconds)

        with create_span(
            "keel.health.check",
            attributes={
                "keel.health.url": target_url,
                "keel.health.expected_status": expected,
            },
        ) as span:
            start_time = time.monotonic()
            status_code: int | None = None
            error: str | None = None

            try:
                response = self._get(target_url)
                status_code = response.status_code
            except httpx.TimeoutException:
                error = f"Health check timed out after {self.config.timeout_seconds} seconds"
            except httpx.HTTPError as e:
                error = sanitize_error_message(f"Health check request failed: {e}")

            duration_ms = int((time.monotonic() - start_time) * 1000)
            passed = status_code == expected
            if status_code is not None and not passed:
                error = f"Health check failed with response code {status_code} (expected {expected})"

            span.set_attribute("keel.health.duration_ms", duration_ms)
            span.set_attribute("keel.health.passed", passed)
            if status_code is not None:
                span.set_attribute("keel.health.status_code", status_code)

            if passed:
                logger.info(
                    "health_check_passed",
                    url=target_url,
                    status_code=status_code,
                    duration_ms=duration_ms,
                )
            else:
                logger.warning(
                    "health_check_failed",
                    url=target_url,
                    status_code=status_code,
                    error=error,
                    duration_ms=duration_ms,
                )

            return HealthCheckResult(
                url=target_url,
                expected_status=expected,
                status_code=status_code,
                passed=passed,
                error=error,
                duration_ms=duration_ms,
            )

    def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return self._client.get(url, timeout=self.config.timeout_seconds)
        with httpx.Client(follow_redirects=False) as client:
            return client.get(url, timeout=self.config.timeout_seconds)


__all__ = ["HealthProbe"]
