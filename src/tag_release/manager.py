"""Release state machine.

ReleaseManager drives a tag through gates, preview deployment, QA decision
and promotion, and records every committed state change in the audit ledger.

State Transitions:
    pending       -> gates-running
    gates-running -> gates-passed | gates-failed
    gates-failed  -> gates-running (retry) | rejected
    gates-passed  -> deployed | accepted | rejected
    deployed      -> accepted | rejected
    accepted      -> promoted (rc tier only)
    rejected, promoted: terminal

Concurrency:
    Every mutating operation holds the tag's lock for its whole duration, so
    two operations on the same tag never interleave. Different tags proceed
    independently. The tag lock is always taken before the ledger's lock.
    Notifications are sent after the tag lock is released.

Failure Handling:
    Validation, not-found and state errors are raised before anything is
    written. Upstream failures (gate runner, deployer, store, ledger) restore
    the previous snapshot and propagate as UpstreamError.

Example:
    >>> manager = ReleaseManager(config, runner, ledger)
    >>> manager.start_release("v1.0.0-rc.1", "abc123", user="ci")
    >>> manager.run_gates("v1.0.0-rc.1")
    >>> manager.accept_release("v1.0.0-rc.1", reviewer="qa-lead")
    >>> manager.promote("v1.0.0-rc.1").promoted_tag
    'v1.0.0'
"""

from __future__ import annotations

import fnmatch
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

from tag_release.audit.ledger import AuditLedger
from tag_release.config import get_preview_url
from tag_release.errors import (
    ConfigurationError,
    FormatError,
    NotFoundError,
    ReasonRequiredError,
    ReleaseError,
    StateError,
    TagFormatError,
    UpstreamError,
)
from tag_release.gates import DEFAULT_GATE_TIMEOUT_SECONDS, GateRunner, run_gates_concurrently
from tag_release.notifier import ReleaseNotifier
from tag_release.schemas.config import ReleaseConfig, TierPolicy
from tag_release.schemas.release import GateResult, GateRunResult, Release, ReleaseState
from tag_release.store import InMemoryReleaseStore, ReleaseStore
from tag_release.tags import parse_tag, promoted_tag, sort_tags
from tag_release.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

PROMOTABLE_TIER = "rc"
DEFAULT_DOMAIN = "localhost"

TRANSITIONS: dict[ReleaseState, frozenset[ReleaseState]] = {
    ReleaseState.PENDING: frozenset({ReleaseState.GATES_RUNNING}),
    ReleaseState.GATES_RUNNING: frozenset({ReleaseState.GATES_PASSED, ReleaseState.GATES_FAILED}),
    ReleaseState.GATES_FAILED: frozenset({ReleaseState.GATES_RUNNING, ReleaseState.REJECTED}),
    ReleaseState.GATES_PASSED: frozenset(
        {ReleaseState.DEPLOYED, ReleaseState.ACCEPTED, ReleaseState.REJECTED}
    ),
    ReleaseState.DEPLOYED: frozenset({ReleaseState.ACCEPTED, ReleaseState.REJECTED}),
    ReleaseState.ACCEPTED: frozenset({ReleaseState.PROMOTED}),
    ReleaseState.REJECTED: frozenset(),
    ReleaseState.PROMOTED: frozenset(),
}


# Notifications are sent after the tag lock is released
Notice = tuple[Callable[[Release], Any], Release]


@dataclass
class _TagLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


def can_transition(current: ReleaseState, target: ReleaseState) -> bool:
    """Whether ``current -> target`` is a defined transition."""
    return target in TRANSITIONS[current]


@runtime_checkable
class PreviewDeployer(Protocol):
    """Deploys a release to its preview environment."""

    def deploy(self, release: Release, preview_url: str) -> None:
        ...


def _gate_details(results: list[GateResult]) -> list[dict[str, Any]]:
    return [
        {
            "gate": r.gate.value,
            "status": r.status.value,
            "duration_ms": r.duration_ms,
            "detail": r.detail,
        }
        for r in results
    ]


class ReleaseManager:
    """Release lifecycle orchestrator.

    Args:
        config: Validated release configuration.
        runner: Executes individual gates.
        ledger: Audit ledger receiving one entry per state change.
        store: Snapshot storage. Defaults to in-memory.
        deployer: Optional preview deployer called by deploy_preview().
        notifier: Sends lifecycle notifications. Defaults to a log-only notifier.
        domain: Substituted for ``{domain}`` in the preview URL template.
        gate_timeout_seconds: Join timeout for one gate run.
        max_workers: Gate fan-out thread pool size.
    """

    def __init__(
        self,
        config: ReleaseConfig,
        runner: GateRunner,
        ledger: AuditLedger | None = None,
        store: ReleaseStore | None = None,
        *,
        deployer: PreviewDeployer | None = None,
        notifier: ReleaseNotifier | None = None,
        domain: str = DEFAULT_DOMAIN,
        gate_timeout_seconds: float | None = DEFAULT_GATE_TIMEOUT_SECONDS,
        max_workers: int | None = None,
    ) -> None:
        self.config = config
        self.ledger = ledger if ledger is not None else AuditLedger()
        self._runner = runner
        self._store: ReleaseStore = store if store is not None else InMemoryReleaseStore()
        self._deployer = deployer
        self._notifier = notifier if notifier is not None else ReleaseNotifier(config)
        self._domain = domain
        self._gate_timeout_seconds = gate_timeout_seconds
        self._max_workers = max_workers

        self._tag_locks: dict[str, _TagLock] = {}
        self._registry_lock = threading.Lock()
        self._log = logger.bind(component="release_manager")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, tag: str) -> Iterator[None]:
        with self._registry_lock:
            entry = self._tag_locks.get(tag)
            if entry is None:
                entry = self._tag_locks[tag] = _TagLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._tag_locks[tag]

    def _send(self, notices: list[Notice]) -> None:
        for notify, release in notices:
            notify(release)

    def _load(self, tag: str) -> Release | None:
        try:
            return self._store.get(tag)
        except ReleaseError:
            raise
        except Exception as e:
            raise UpstreamError("release_store", str(e)) from e

    def _require(self, tag: str) -> Release:
        release = self._load(tag)
        if release is None:
            raise NotFoundError(tag)
        return release

    def _save(self, release: Release) -> None:
        try:
            self._store.save(release)
        except ReleaseError:
            raise
        except Exception as e:
            raise UpstreamError("release_store", str(e)) from e

    def _restore(self, previous: Release, failed: Release) -> None:
        try:
            self._store.save(previous)
        except Exception as e:
            # The original failure is what the caller needs to see
            self._log.error(
                "release_restore_failed",
                tag=previous.tag,
                state=failed.state.value,
                error=str(e),
            )
            return
        self._log.warning(
            "release_restored",
            tag=previous.tag,
            restored_state=previous.state.value,
            abandoned_state=failed.state.value,
        )

    def _commit(
        self,
        previous: Release,
        updated: Release,
        event: str,
        user: str,
        details: dict[str, Any] | None = None,
    ) -> Release:
        """Persist ``updated`` and append its audit entry, or restore ``previous``."""
        try:
            self._save(updated)
            self.ledger.record_event(updated.tag, event, user, details)
        except UpstreamError:
            self._restore(previous, updated)
            raise
        return updated

    def _check_transition(self, release: Release, target: ReleaseState, operation: str) -> None:
        if not can_transition(release.state, target):
            raise StateError(release.tag, release.state.value, operation)

    def _policy(self, tier: str) -> TierPolicy:
        policy = self.config.tiers.get(tier)
        if policy is None:
            raise ConfigurationError([f"No tier policy configured for tier '{tier}'"])
        return policy

    def _dispatch(self, release: Release, gates: list[Any]) -> list[GateResult]:
        return run_gates_concurrently(
            self._runner,
            gates,
            release,
            timeout_seconds=self._gate_timeout_seconds,
            max_workers=self._max_workers,
        )

    def _finish_gate_run(
        self,
        previous: Release,
        running: Release,
        run: GateRunResult,
        user: str,
        *,
        retry: bool,
    ) -> list[Notice]:
        state = ReleaseState.GATES_PASSED if run.passed else ReleaseState.GATES_FAILED
        updated = running.transition(state, gate_results=run)
        details: dict[str, Any] = {
            "passed": run.passed,
            "gate_results": _gate_details(run.results),
        }
        if retry:
            details["retry"] = True
        self._commit(previous, updated, state.value, user, details)

        self._log.info(
            "gates_completed",
            tag=updated.tag,
            passed=run.passed,
            failed_gates=[g.value for g in run.failed_gates],
            retry=retry,
        )
        if not run.passed:
            return [(self._notifier.notify_gates_failed, updated)]
        if self._policy(updated.tier).auto_deploy:
            return self._deploy(updated, user)[1]
        return []

    def _deploy(self, release: Release, user: str) -> tuple[str, list[Notice]]:
        self._check_transition(release, ReleaseState.DEPLOYED, "deploy")
        url = get_preview_url(self.config, release.tag, self._domain)

        if self._deployer is not None:
            try:
                self._deployer.deploy(release, url)
            except ReleaseError:
                raise
            except Exception as e:
                self._log.error("preview_deploy_failed", tag=release.tag, error=str(e))
                raise UpstreamError("preview_deployer", str(e)) from e

        updated = release.transition(ReleaseState.DEPLOYED, preview_url=url)
        self._commit(release, updated, "deployed", user, {"preview_url": url})
        self._log.info("preview_deployed", tag=release.tag, preview_url=url)
        return url, [(self._notifier.notify_deploy, updated)]

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def start_release(self, tag: str, commit: str, user: str = "system") -> Release:
        """Create a pending release for ``tag`` at ``commit``.

        Raises:
            TagFormatError: If the tag is malformed or does not match tagPattern.
            FormatError: If ``commit`` is empty.
            ConfigurationError: If the tag's tier has no policy.
            StateError: If a release for ``tag`` already exists.
            UpstreamError: If the store or ledger fails.
        """
        parsed = parse_tag(tag)
        if not fnmatch.fnmatchcase(tag, self.config.tag_pattern):
            raise TagFormatError(tag, f"does not match tagPattern '{self.config.tag_pattern}'")
        if not isinstance(commit, str) or not commit.strip():
            raise FormatError(f"A commit SHA is required to start release {tag}")
        self._policy(parsed.tier)

        with create_span(
            "tag_release.start_release",
            attributes={"release.tag": tag, "release.tier": parsed.tier},
        ), self._locked(tag):
            existing = self._load(tag)
            if existing is not None:
                raise StateError(tag, existing.state.value, "start", "release already exists")

            release = Release(tag=tag, commit_sha=commit.strip(), tier=parsed.tier)
            self._save(release)
            try:
                self.ledger.record_event(
                    tag, "created", user, {"commit": release.commit_sha, "tier": release.tier}
                )
            except UpstreamError:
                self._discard(release)
                raise

        self._log.info("release_started", tag=tag, tier=parsed.tier, commit=release.commit_sha)
        return release

    def _discard(self, release: Release) -> None:
        try:
            self._store.discard(release.tag)
        except Exception as e:
            self._log.error("release_discard_failed", tag=release.tag, error=str(e))

    def run_gates(self, tag: str, user: str = "system") -> GateRunResult:
        """Run every gate of the tag's tier concurrently and record the outcome.

        Deploys the preview right away when the tier has auto_deploy and all
        gates passed.

        Raises:
            NotFoundError: Unknown tag.
            StateError: Release is not pending.
            UpstreamError: Gate runner, store or ledger failure. The release
                is restored to its previous snapshot.
        """
        with create_span("tag_release.run_gates", attributes={"release.tag": tag}), self._locked(
            tag
        ):
            release = self._require(tag)
            self._check_transition(release, ReleaseState.GATES_RUNNING, "run gates on")
            policy = self._policy(release.tier)

            running = release.transition(ReleaseState.GATES_RUNNING)
            self._save(running)
            try:
                results = self._dispatch(running, list(policy.gates))
            except UpstreamError:
                self._restore(release, running)
                raise

            run = GateRunResult.from_results(results)
            notices = self._finish_gate_run(release, running, run, user, retry=False)
        self._send(notices)
        return run

    def retry_gates(self, tag: str, user: str = "system") -> GateRunResult:
        """Re-run only the gates that failed and merge their results.

        Raises:
            NotFoundError: Unknown tag.
            StateError: Release is not in gates-failed.
            UpstreamError: Gate runner, store or ledger failure.
        """
        with create_span(
            "tag_release.retry_gates", attributes={"release.tag": tag}
        ), self._locked(tag):
            release = self._require(tag)
            if release.state != ReleaseState.GATES_FAILED:
                raise StateError(tag, release.state.value, "retry gates on")
            if release.gate_results is None:
                raise StateError(tag, release.state.value, "retry gates on", "no previous results")

            failing = release.gate_results.failed_gates
            running = release.transition(ReleaseState.GATES_RUNNING)
            self._save(running)
            try:
                rerun = {r.gate: r for r in self._dispatch(running, failing)}
            except UpstreamError:
                self._restore(release, running)
                raise

            merged = [rerun.get(r.gate, r) for r in release.gate_results.results]
            run = GateRunResult.from_results(merged)
            notices = self._finish_gate_run(release, running, run, user, retry=True)
        self._send(notices)
        return run

    def deploy_preview(self, tag: str, user: str = "system") -> str:
        """Deploy the preview environment and return its URL.

        Raises:
            NotFoundError: Unknown tag.
            StateError: Release is not in gates-passed.
            UpstreamError: Deployer, store or ledger failure.
        """
        with create_span(
            "tag_release.deploy_preview", attributes={"release.tag": tag}
        ), self._locked(tag):
            url, notices = self._deploy(self._require(tag), user)
        self._send(notices)
        return url

    def accept_release(self, tag: str, reviewer: str) -> Release:
        """Record a QA acceptance. Role checks belong to the caller.

        Raises:
            NotFoundError: Unknown tag.
            StateError: Release is not in gates-passed or deployed.
        """
        with create_span(
            "tag_release.accept_release", attributes={"release.tag": tag}
        ), self._locked(tag):
            release = self._require(tag)
            self._check_transition(release, ReleaseState.ACCEPTED, "accept")
            updated = release.transition(ReleaseState.ACCEPTED, reviewer=reviewer)
            self._commit(release, updated, "accepted", reviewer, {"reviewer": reviewer})

        self._log.info("release_accepted", tag=tag, reviewer=reviewer)
        self._notifier.notify_accept(updated)
        return updated

    def reject_release(self, tag: str, reviewer: str, reason: str) -> Release:
        """Record a QA rejection. A non-blank reason is required.

        Raises:
            ReasonRequiredError: ``reason`` is empty or whitespace.
            NotFoundError: Unknown tag.
            StateError: Release cannot be rejected from its current state.
        """
        if not isinstance(reason, str) or not reason.strip():
            raise ReasonRequiredError(tag)

        with create_span(
            "tag_release.reject_release", attributes={"release.tag": tag}
        ), self._locked(tag):
            release = self._require(tag)
            self._check_transition(release, ReleaseState.REJECTED, "reject")
            updated = release.transition(
                ReleaseState.REJECTED, reviewer=reviewer, rejection_reason=reason.strip()
            )
            self._commit(
                release,
                updated,
                "rejected",
                reviewer,
                {"reviewer": reviewer, "reason": reason.strip()},
            )

        self._log.info("release_rejected", tag=tag, reviewer=reviewer)
        self._notifier.notify_reject(updated)
        return updated

    def promote(self, tag: str, user: str = "system") -> Release:
        """Promote an accepted rc release to its clean production tag.

        Raises:
            NotFoundError: Unknown tag.
            StateError: Tier is not rc, or the release is not accepted.
        """
        with create_span("tag_release.promote", attributes={"release.tag": tag}), self._locked(
            tag
        ):
            release = self._require(tag)
            if release.tier != PROMOTABLE_TIER:
                raise StateError(
                    tag,
                    release.state.value,
                    "promote",
                    f"only {PROMOTABLE_TIER} releases can be promoted (tier is '{release.tier}')",
                )
            self._check_transition(release, ReleaseState.PROMOTED, "promote")

            target = promoted_tag(tag)
            updated = release.transition(ReleaseState.PROMOTED, promoted_tag=target)
            self._commit(release, updated, "promoted", user, {"promoted_tag": target})

        self._log.info("release_promoted", tag=tag, promoted_tag=target)
        self._notifier.notify_promote(updated)
        return updated

    def get_release(self, tag: str) -> Release | None:
        """Current snapshot for ``tag``, or None."""
        return self._load(tag)

    def list_releases(self) -> list[Release]:
        """Every release, newest version first."""
        try:
            releases = {r.tag: r for r in self._store.list()}
        except ReleaseError:
            raise
        except Exception as e:
            raise UpstreamError("release_store", str(e)) from e
        return [releases[t] for t in sort_tags(releases)]


__all__ = [
    "PROMOTABLE_TIER",
    "PreviewDeployer",
    "ReleaseManager",
    "TRANSITIONS",
    "can_transition",
]
