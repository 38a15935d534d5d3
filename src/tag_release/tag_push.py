"""Tag push webhooks from GitHub and GitLab.

A tag push is the pipeline's entry point: the handler extracts the tag,
commit and pusher from the provider payload, drops refs that are not
release tags, and hands the push to a trigger, by default one that starts
the release and runs its gates.

Payloads:
    github: ``{"ref": "refs/tags/<tag>", "after": <sha>, "pusher": {"name": ...}}``
    gitlab: ``{"ref": "<tag>" | "refs/tags/<tag>", "checkout_sha": <sha>,
    "user_name": ...}``

Provider retries are suppressed: a second push of the same tag within
``dedupe_window_seconds`` of a triggered one is ignored.

Example:
    >>> handler = TagPushHandler(release_pipeline_trigger(manager))
    >>> handler.handle_github_push(
    ...     {"ref": "refs/tags/v1.0.0-rc.1", "after": "abc123", "pusher": {"name": "ci"}}
    ... ).triggered
    True
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from tag_release.errors import FormatError
from tag_release.tags import is_valid_tag
from tag_release.telemetry.tracing import create_span

if TYPE_CHECKING:
    from tag_release.manager import ReleaseManager

logger = structlog.get_logger(__name__)

TAG_REF_PREFIX = "refs/tags/"
DEFAULT_DEDUPE_WINDOW_SECONDS = 60.0
UNKNOWN_PUSHER = "unknown"


class TagPushEvent(BaseModel):
    """A release tag push extracted from a provider payload.

    Attributes:
        tag: Pushed tag name without the ``refs/tags/`` prefix.
        commit: Commit SHA the tag points at.
        pusher: Name of the user who pushed.
        source: Provider the payload came from.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tag: str = Field(..., min_length=1, description="Pushed tag name")
    commit: str = Field(..., min_length=1, description="Tagged commit SHA")
    pusher: str = Field(default=UNKNOWN_PUSHER, description="User who pushed the tag")
    source: str = Field(..., description="Webhook provider")


class TagPushResult(BaseModel):
    """Outcome of handling one tag push.

    Attributes:
        triggered: Whether the release trigger ran.
        tag: Tag from the payload, when one could be read.
        reason: Why the push was ignored.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    triggered: bool = Field(..., description="Whether the release trigger ran")
    tag: str | None = Field(default=None, description="Tag from the payload")
    reason: str | None = Field(default=None, description="Why the push was ignored")


ReleaseTrigger = Callable[[TagPushEvent], Any]


def _tag_from_ref(ref: Any, *, bare_allowed: bool) -> str | None:
    if not isinstance(ref, str) or not ref:
        return None
    if ref.startswith(TAG_REF_PREFIX):
        return ref[len(TAG_REF_PREFIX) :]
    if ref.startswith("refs/") or not bare_allowed:
        return None
    return ref


def _pusher_name(value: Any) -> str:
    return value if isinstance(value, str) and value else UNKNOWN_PUSHER


def parse_github_push(payload: Mapping[str, Any]) -> tuple[str | None, str | None, str]:
    """Read ``(tag, commit, pusher)`` from a GitHub push payload.

    ``tag`` is None when the ref is not a tag (branch pushes).
    """
    pusher = payload.get("pusher")
    name = pusher.get("name") if isinstance(pusher, Mapping) else None
    return (
        _tag_from_ref(payload.get("ref"), bare_allowed=False),
        payload.get("after"),
        _pusher_name(name),
    )


def parse_gitlab_push(payload: Mapping[str, Any]) -> tuple[str | None, str | None, str]:
    """Read ``(tag, commit, pusher)`` from a GitLab tag push payload."""
    return (
        _tag_from_ref(payload.get("ref"), bare_allowed=True),
        payload.get("checkout_sha"),
        _pusher_name(payload.get("user_name")),
    )


_PARSERS: dict[str, Callable[[Mapping[str, Any]], tuple[str | None, str | None, str]]] = {
    "github": parse_github_push,
    "gitlab": parse_gitlab_push,
}


def release_pipeline_trigger(manager: ReleaseManager) -> ReleaseTrigger:
    """Trigger that starts the release and runs its gates as the pusher."""

    def trigger(event: TagPushEvent) -> Any:
        manager.start_release(event.tag, event.commit, user=event.pusher)
        return manager.run_gates(event.tag, user=event.pusher)

    return trigger


class TagPushHandler:
    """Turns provider tag push payloads into release triggers.

    Args:
        on_release: Called once per accepted push. Errors it raises propagate
            and the push is not recorded for deduplication.
        dedupe_window_seconds: Repeat pushes of a tag inside this window are
            ignored. Zero disables deduplication.
        clock: Monotonic seconds, injectable for tests.
    """

    def __init__(
        self,
        on_release: ReleaseTrigger,
        *,
        dedupe_window_seconds: float = DEFAULT_DEDUPE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_release = on_release
        self._dedupe_window_seconds = dedupe_window_seconds
        self._clock = clock
        self._last_triggered: dict[str, float] = {}
        self._lock = threading.Lock()

    def _ignored(self, source: str, tag: str | None, reason: str) -> TagPushResult:
        logger.info("tag_push_ignored", source=source, tag=tag, reason=reason)
        return TagPushResult(triggered=False, tag=tag, reason=reason)

    def _is_duplicate(self, tag: str, now: float) -> bool:
        last = self._last_triggered.get(tag)
        return last is not None and now - last < self._dedupe_window_seconds

    def handle_tag_event(self, source: str, payload: Mapping[str, Any]) -> TagPushResult:
        """Handle a push payload from ``source`` (``github`` or ``gitlab``).

        Raises:
            FormatError: Unknown source or a payload that is not an object.
        """
        parser = _PARSERS.get(source)
        if parser is None:
            raise FormatError(
                f"Unsupported webhook source: {source}. Valid sources: {sorted(_PARSERS)}"
            )
        if not isinstance(payload, Mapping):
            raise FormatError(f"{source} webhook payload must be a JSON object")

        tag, commit, pusher = parser(payload)
        logger.info("tag_push_received", source=source, ref=payload.get("ref"), tag=tag)
        if tag is None:
            return self._ignored(source, None, "ref is not a tag")
        if not is_valid_tag(tag):
            return self._ignored(source, tag, f"'{tag}' is not a valid release tag")
        if not isinstance(commit, str) or not commit:
            return self._ignored(source, tag, "payload has no commit SHA")

        with self._lock:
            now = self._clock()
            if self._is_duplicate(tag, now):
                return self._ignored(source, tag, f"duplicate push of {tag} already triggered")
            # Claimed before the trigger runs so concurrent retries are dropped
            self._last_triggered[tag] = now

        event = TagPushEvent(tag=tag, commit=commit, pusher=pusher, source=source)
        with create_span(
            "tag_release.tag_push",
            attributes={"release.tag": tag, "webhook.source": source},
        ):
            try:
                self._on_release(event)
            except Exception:
                with self._lock:
                    if self._last_triggered.get(tag) == now:
                        del self._last_triggered[tag]
                raise

        logger.info("tag_push_triggered", source=source, tag=tag, commit=commit, pusher=pusher)
        return TagPushResult(triggered=True, tag=tag)

    def handle_github_push(self, payload: Mapping[str, Any]) -> TagPushResult:
        return self.handle_tag_event("github", payload)

    def handle_gitlab_push(self, payload: Mapping[str, Any]) -> TagPushResult:
        return self.handle_tag_event("gitlab", payload)


__all__ = [
    "DEFAULT_DEDUPE_WINDOW_SECONDS",
    "ReleaseTrigger",
    "TagPushEvent",
    "TagPushHandler",
    "TagPushResult",
    "parse_github_push",
    "parse_gitlab_push",
    "release_pipeline_trigger",
]
