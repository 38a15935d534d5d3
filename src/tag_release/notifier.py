"""Release lifecycle notifications.

ReleaseNotifier builds Slack Block Kit messages for release events and sends
one message per channel configured under ``notifications.<event>``. Delivery
is best effort: failures are logged and reported in the returned
NotificationResult list, never raised into the release operation.

Example:
    >>> sender = WebhookSender({"#qa": "https://hooks.slack.com/services/T000/B000/XXX"})
    >>> notifier = ReleaseNotifier(config, sender)
    >>> results = notifier.notify_deploy(release)
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from tag_release.schemas.config import ReleaseConfig
from tag_release.schemas.release import Release
from tag_release.telemetry.sanitization import sanitize_error_message
from tag_release.telemetry.tracing import create_span

BACKOFF_BASE_SECONDS = 1.0
"""Base delay for exponential backoff (doubles each retry)."""

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_COUNT = 3

logger = structlog.get_logger(__name__)


class NotificationResult(BaseModel):
    """Outcome of delivering one message to one channel.

    Attributes:
        event: Lifecycle event (onDeploy, onAccept, ...).
        channel: Channel the message was addressed to.
        sent: Whether the message was delivered.
        status_code: Last HTTP status code, if a response was received.
        error: Why delivery failed.
        attempts: Delivery attempts made.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    event: str
    channel: str
    sent: bool
    status_code: int | None = Field(default=None)
    error: str | None = Field(default=None)
    attempts: int = Field(default=0, ge=0)


@runtime_checkable
class MessageSender(Protocol):
    """Delivers a message payload to a named channel."""

    def send(self, event: str, channel: str, message: dict[str, Any]) -> NotificationResult:
        ...


class WebhookSender:
    """Posts messages to per-channel webhook URLs with httpx.

    5xx responses, timeouts and transport errors are retried with exponential
    backoff (1s, 2s, 4s, ...). 4xx responses are not retried.

    Args:
        webhooks: Channel name to webhook URL.
        timeout_seconds: Per-request timeout.
        retry_count: Retries after the first attempt.
        client: httpx client to use (tests inject a MockTransport client).
        sleep: Backoff sleep function.
    """

    def __init__(
        self,
        webhooks: Mapping[str, str],
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        retry_count: int = DEFAULT_RETRY_COUNT,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._webhooks = dict(webhooks)
        self._timeout_seconds = timeout_seconds
        self._retry_count = retry_count
        self._client = client
        self._sleep = sleep

    def _post(self, url: str, message: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, json=message, timeout=self._timeout_seconds)
        with httpx.Client(timeout=self._timeout_seconds) as client:
            return client.post(url, json=message)

    def send(self, event: str, channel: str, message: dict[str, Any]) -> NotificationResult:
        url = self._webhooks.get(channel)
        if url is None:
            logger.warning(
                "notification_channel_unconfigured", notification_event=event, channel=channel
            )
            return NotificationResult(
                event=event,
                channel=channel,
                sent=False,
                error=f"no webhook configured for channel '{channel}'",
            )

        max_attempts = 1 + self._retry_count
        last_status: int | None = None
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            retryable = False
            try:
                response = self._post(url, message)
                last_status = response.status_code
                if response.status_code < 400:
                    logger.info(
                        "notification_sent",
                        notification_event=event,
                        channel=channel,
                        status_code=response.status_code,
                        attempts=attempt,
                    )
                    return NotificationResult(
                        event=event,
                        channel=channel,
                        sent=True,
                        status_code=response.status_code,
                        attempts=attempt,
                    )
                if response.status_code >= 500:
                    last_error = f"Server error: {response.status_code}"
                    retryable = True
                else:
                    last_error = f"Client error: {response.status_code}"
            except httpx.TimeoutException:
                last_error = "Request timed out"
                retryable = True
            except httpx.RequestError as e:
                last_error = sanitize_error_message(str(e))
                retryable = True

            if not retryable or attempt == max_attempts:
                break

            backoff = BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
            logger.warning(
                "notification_retry",
                notification_event=event,
                channel=channel,
                error=last_error,
                attempt=attempt,
                max_attempts=max_attempts,
                backoff_seconds=backoff,
            )
            self._sleep(backoff)

        logger.error(
            "notification_failed",
            notification_event=event,
            channel=channel,
            status_code=last_status,
            error=last_error,
            attempts=attempt,
        )
        return NotificationResult(
            event=event,
            channel=channel,
            sent=False,
            status_code=last_status,
            error=last_error,
            attempts=attempt,
        )


def _section(text: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def gate_summary(release: Release) -> tuple[int, int]:
    """(passed, failed) gate counts of a release."""
    if release.gate_results is None:
        return 0, 0
    passed = sum(1 for r in release.gate_results.results if r.passed)
    return passed, len(release.gate_results.results) - passed


def build_deploy_message(release: Release) -> dict[str, Any]:
    passed, failed = gate_summary(release)
    return {
        "blocks": [
            _section(f":rocket: *Release Deployed: {release.tag}*\nReview needed"),
            _section(f"*Preview URL:* {release.preview_url or 'N/A'}"),
            _section(f"*Gates:* {passed} passed, {failed} failed"),
        ]
    }


def build_accept_message(release: Release) -> dict[str, Any]:
    return {
        "blocks": [
            _section(f":white_check_mark: *Release Accepted: {release.tag}*"),
            _section(f"*Reviewer:* {release.reviewer or 'Unknown'}"),
        ]
    }


def build_reject_message(release: Release) -> dict[str, Any]:
    return {
        "blocks": [
            _section(f":x: *Release Rejected: {release.tag}*"),
            _section(f"*Reviewer:* {release.reviewer or 'Unknown'}"),
            _section(f"*Reason:* {release.rejection_reason or 'N/A'}"),
        ]
    }


def build_promote_message(release: Release) -> dict[str, Any]:
    return {
        "blocks": [
            _section(f":tada: *Release Promoted: {release.tag}*"),
            _section(f"*Production tag:* {release.promoted_tag or 'N/A'}"),
        ]
    }


def build_gates_failed_message(release: Release) -> dict[str, Any]:
    failed = release.gate_results.failed_gates if release.gate_results else []
    names = ", ".join(g.value for g in failed) or "unknown"
    return {
        "blocks": [
            _section(f":warning: *Gates Failed: {release.tag}*"),
            _section(f"*Failed gates:* {names}"),
        ]
    }


_BUILDERS: dict[str, Callable[[Release], dict[str, Any]]] = {
    "onDeploy": build_deploy_message,
    "onAccept": build_accept_message,
    "onReject": build_reject_message,
    "onPromote": build_promote_message,
    "onGatesFailed": build_gates_failed_message,
}


class ReleaseNotifier:
    """Sends release event messages to the channels configured per event.

    Args:
        config: Release configuration (``notifications`` section).
        sender: Message transport. Without a sender, messages are logged only.
    """

    def __init__(self, config: ReleaseConfig, sender: MessageSender | None = None) -> None:
        self._config = config
        self._sender = sender

    def notify(self, event: str, release: Release) -> list[NotificationResult]:
        """Send the message for ``event`` to every configured channel."""
        channels = self._config.channels_for(event)
        if not channels:
            return []

        message = _BUILDERS[event](release)
        results: list[NotificationResult] = []
        with create_span(
            "tag_release.notify",
            attributes={"release.tag": release.tag, "notification.event": event},
        ):
            for channel in channels:
                payload = {**message, "channel": channel}
                if self._sender is None:
                    logger.info(
                        "notification_not_configured",
                        notification_event=event,
                        channel=channel,
                        tag=release.tag,
                    )
                    results.append(
                        NotificationResult(
                            event=event,
                            channel=channel,
                            sent=False,
                            error="no sender configured",
                        )
                    )
                    continue
                try:
                    results.append(self._sender.send(event, channel, payload))
                except Exception as e:
                    error = sanitize_error_message(str(e))
                    logger.error(
                        "notification_sender_failed",
                        notification_event=event,
                        channel=channel,
                        tag=release.tag,
                        error=error,
                    )
                    results.append(
                        NotificationResult(event=event, channel=channel, sent=False, error=error)
                    )
        return results

    def notify_deploy(self, release: Release) -> list[NotificationResult]:
        return self.notify("onDeploy", release)

    def notify_accept(self, release: Release) -> list[NotificationResult]:
        return self.notify("onAccept", release)

    def notify_reject(self, release: Release) -> list[NotificationResult]:
        return self.notify("onReject", release)

    def notify_promote(self, release: Release) -> list[NotificationResult]:
        return self.notify("onPromote", release)

    def notify_gates_failed(self, release: Release) -> list[NotificationResult]:
        return self.notify("onGatesFailed", release)


__all__ = [
    "BACKOFF_BASE_SECONDS",
    "MessageSender",
    "NotificationResult",
    "ReleaseNotifier",
    "WebhookSender",
    "build_accept_message",
    "build_deploy_message",
    "build_gates_failed_message",
    "build_promote_message",
    "build_reject_message",
]
