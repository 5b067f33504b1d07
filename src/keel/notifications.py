"""Chat notifications for terminal pipeline outcomes.

Messages are posted to Slack-compatible incoming webhooks. Event types:
``success``, ``failure``, ``rollback`` and ``rollback_failed``. Each channel
subscribes to a subset of events.

Delivery is fire-and-forget: failures are logged and never change the
pipeline result.

Example:
    >>> notifier = Notifier(configs=[NotificationConfig(url="https://hooks.slack.com/services/...")])
    >>> results = await notifier.notify_all("success", result)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from keel.schemas.config import NotificationConfig
from keel.schemas.pipeline import PipelineResult, PipelineState
from keel.telemetry.sanitization import sanitize_error_message
from keel.telemetry.tracing import create_span

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""

logger = structlog.get_logger(__name__)

_STATE_EVENTS: dict[PipelineState, str] = {
    PipelineState.SUCCEEDED: "success",
    PipelineState.FAILED: "failure",
    PipelineState.ROLLED_BACK: "rollback",
    PipelineState.ROLLBACK_FAILED: "rollback_failed",
}

_EVENT_HEADLINES: dict[str, str] = {
    "success": ":white_check_mark: Deployment succeeded",
    "failure": ":x: Pipeline failed",
    "rollback": ":leftwards_arrow_with_hook: Deployment rolled back",
    "rollback_failed": ":rotating_light: Rollback failed",
}


def event_for_state(state: PipelineState) -> str:
    """Map a terminal pipeline state to its notification event type."""
    return _STATE_EVENTS[state]


class NotificationResult(BaseModel):
    """Result of a notification attempt.

    Attributes:
        success: Whether the message was delivered.
        status_code: HTTP response status code (if a response was received).
        url: Webhook URL.
        error: Error message if delivery failed.
        attempts: Number of delivery attempts made.
    """

    model_config = ConfigDict(extra="forbid")

    success: bool
    status_code: int | None = None
    url: str
    error: str | None = None
    attempts: int = Field(default=1, ge=1)


class Notifier:
    """Posts pipeline outcomes to the configured webhook channels.

    Attributes:
        configs: Notification channels.
    """

    def __init__(self, configs: list[NotificationConfig]) -> None:
        self.configs = list(configs)

    def should_notify(self, config: NotificationConfig, event_type: str) -> bool:
        return event_type in config.events

    def build_payload(self, event_type: str, result: PipelineResult) -> dict[str, Any]:
        """Build the Slack message for a pipeline outcome.

        Args:
            event_type: Notification event type.
            result: Terminal pipeline result.

        Returns:
            Slack incoming-webhook payload (``text`` in mrkdwn).
        """
        run = result.run
        lines = [f"{_EVENT_HEADLINES[event_type]}: *{run.pipeline_name}* #{run.build_number}"]
        if run.branch:
            lines.append(f"Branch: `{run.branch}`")
        if result.artifact is not None:
            lines.append(f"Image: `{result.artifact.image.ref}`")
        lines.append(f"Target: {run.target_name}")
        if result.rollback is not None:
            lines.append(f"Restored: `{result.rollback.restored_image}`")
        if result.error and event_type != "success":
            lines.append(f"Error: {result.error}")
        if run.run_url:
            lines.append(f"<{run.run_url}|View run>")
        return {"text": "\n".join(lines)}

    async def notify(
        self,
        config: NotificationConfig,
        event_type: str,
        payload: dict[str, Any],
    ) -> NotificationResult:
        """Deliver one message, retrying 5xx and transport errors with backoff."""
        url = config.url
        max_attempts = 1 + config.retry_count
        last_status_code: int | None = None
        last_error: str | None = None

        with create_span(
            "keel.notification.send",
            attributes={
                "keel.notification.event_type": event_type,
                "keel.notification.max_attempts": max_attempts,
            },
        ) as span:
            start_time = time.monotonic()

            for attempt in range(1, max_attempts + 1):
                try:
                    async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
                        response = await client.post(
                            url=url,
                            json=payload,
                            headers=config.headers or {},
                        )
                    last_status_code = response.status_code

                    if response.status_code < 400:
                        duration_ms = int((time.monotonic() - start_time) * 1000)
                        span.set_attribute("keel.notification.attempts", attempt)
                        span.set_attribute("keel.notification.status_code", response.status_code)
                        logger.info(
                            "notification_sent",
                            event_type=event_type,
                            status_code=response.status_code,
                            attempts=attempt,
                            duration_ms=duration_ms,
                        )
                        return NotificationResult(
                            success=True,
                            status_code=response.status_code,
                            url=url,
                            attempts=attempt,
                        )

                    if response.status_code < 500:
                        # Client errors are not retried
                        last_error = f"Client error: {response.status_code}"
                        break
                    last_error = f"Server error: {response.status_code}"
                except httpx.TimeoutException:
                    last_error = "Request timed out"
                except httpx.RequestError as e:
                    last_error = sanitize_error_message(str(e))

                if attempt < max_attempts:
                    backoff_delay = BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
                    logger.warning(
                        "notification_retry",
                        event_type=event_type,
                        error=last_error,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        backoff_seconds=backoff_delay,
                    )
                    await asyncio.sleep(backoff_delay)

            span.set_attribute("keel.notification.attempts", attempt)
            logger.error(
                "notification_failed",
                event_type=event_type,
                status_code=last_status_code,
                error=last_error,
                attempts=attempt,
            )
            return NotificationResult(
                success=False,
                status_code=last_status_code,
                url=url,
                error=last_error,
                attempts=attempt,
            )

    async def notify_all(self, event_type: str, result: PipelineResult) -> list[NotificationResult]:
        """Send the outcome to every channel subscribed to ``event_type``.

        One channel failing does not stop delivery to the others.
        """
        payload = self.build_payload(event_type, result)
        results: list[NotificationResult] = []
        for config in self.configs:
            if not self.should_notify(config, event_type):
                logger.debug(
                    "notification_skipped",
                    event_type=event_type,
                    reason="event_type_not_subscribed",
                )
                continue
            results.append(await self.notify(config, event_type, payload))
        return results

    def send(self, result: PipelineResult) -> list[NotificationResult]:
        """Notify the channels about a terminal result from synchronous code.

        Never raises: unexpected errors are logged and an empty list returned.
        """
        if not self.configs:
            return []
        event_type = event_for_state(result.state)
        try:
            return asyncio.run(self.notify_all(event_type, result))
        except Exception as e:
            logger.error(
                "notification_dispatch_failed",
                event_type=event_type,
                error=sanitize_error_message(str(e)),
            )
            return []


__all__ = [
    "NotificationResult",
    "Notifier",
    "event_for_state",
]
