"""Unit tests for the release state machine."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

import pytest

from tag_release.audit import AuditLedger, InMemoryLedgerStorage
from tag_release.config import load_release_config
from tag_release.errors import (
    ConfigurationError,
    FormatError,
    NotFoundError,
    ReasonRequiredError,
    StateError,
    TagFormatError,
    UpstreamError,
)
from tag_release.gates import CallableGateRunner
from tag_release.manager import TRANSITIONS, ReleaseManager, can_transition
from tag_release.notifier import NotificationResult, ReleaseNotifier
from tag_release.schemas.audit import AuditEntry
from tag_release.schemas.release import GateName, Release, ReleaseState
from tag_release.store import InMemoryReleaseStore

TAG = "v1.0.0-rc.1"

MakeManager = Callable[..., ReleaseManager]


class FlakyStorage(InMemoryLedgerStorage):
    """Ledger storage that rejects appends while ``fail`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def append(self, entry: AuditEntry) -> None:
        if self.fail:
            raise OSError("ledger volume unavailable")
        super().append(entry)


class RecordingDeployer:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.error = error

    def deploy(self, release: Release, preview_url: str) -> None:
        self.calls.append((release.tag, preview_url))
        if self.error is not None:
            raise self.error


class FailingStore(InMemoryReleaseStore):
    """Release store that rejects the next snapshot in each ``fail_on`` state."""

    def __init__(self, *fail_on: ReleaseState) -> None:
        super().__init__()
        self.fail_on = set(fail_on)

    def save(self, release: Release) -> None:
        if release.state in self.fail_on:
            self.fail_on.discard(release.state)
            raise OSError("release volume unavailable")
        super().save(release)


def _events(manager: ReleaseManager, tag: str = TAG) -> list[str]:
    return [e.event for e in manager.ledger.get_audit_trail(tag)]


class TestTransitions:
    def test_terminal_states_have_no_exits(self) -> None:
        assert TRANSITIONS[ReleaseState.REJECTED] == frozenset()
        assert TRANSITIONS[ReleaseState.PROMOTED] == frozenset()

    def test_every_state_has_an_entry(self) -> None:
        assert set(TRANSITIONS) == set(ReleaseState)

    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (ReleaseState.PENDING, ReleaseState.GATES_RUNNING, True),
            (ReleaseState.PENDING, ReleaseState.ACCEPTED, False),
            (ReleaseState.GATES_FAILED, ReleaseState.ACCEPTED, False),
            (ReleaseState.GATES_PASSED, ReleaseState.ACCEPTED, True),
            (ReleaseState.DEPLOYED, ReleaseState.REJECTED, True),
            (ReleaseState.ACCEPTED, ReleaseState.REJECTED, False),
        ],
    )
    def test_can_transition(
        self, current: ReleaseState, target: ReleaseState, allowed: bool
    ) -> None:
        assert can_transition(current, target) is allowed


class TestStartRelease:
    """Tests for ReleaseManager.start_release()."""

    def test_creates_pending_release(self, manager: ReleaseManager) -> None:
        release = manager.start_release(TAG, "abc123", user="ci")
        assert release.state == ReleaseState.PENDING
        assert release.tier == "rc"
        assert release.commit_sha == "abc123"
        assert manager.get_release(TAG) == release

        entry = manager.ledger.get_latest_event(TAG)
        assert entry is not None
        assert (entry.event, entry.user) == ("created", "ci")
        assert entry.metadata == {"commit": "abc123", "tier": "rc"}

    def test_malformed_tag(self, manager: ReleaseManager) -> None:
        with pytest.raises(TagFormatError):
            manager.start_release("release-1", "abc123")
        assert manager.ledger.query() == []

    def test_tag_must_match_pattern(self, make_manager: MakeManager) -> None:
        config = load_release_config({"release": {"tagPattern": "v2.*"}})
        manager = make_manager(config=config)
        with pytest.raises(TagFormatError, match="tagPattern"):
            manager.start_release(TAG, "abc123")
        manager.start_release("v2.0.0-rc.1", "abc123")

    @pytest.mark.parametrize("commit", ["", "   "])
    def test_commit_required(self, manager: ReleaseManager, commit: str) -> None:
        with pytest.raises(FormatError, match="commit"):
            manager.start_release(TAG, commit)

    def test_tier_without_policy(self, make_manager: MakeManager) -> None:
        base = load_release_config()
        tiers = {k: v for k, v in base.tiers.items() if k != "dev"}
        manager = make_manager(config=base.model_copy(update={"tiers": tiers}))
        with pytest.raises(ConfigurationError, match="dev"):
            manager.start_release("v1.0.0-dev.1", "abc123")

    def test_duplicate_tag(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        with pytest.raises(StateError, match="already exists"):
            manager.start_release(TAG, "def456")
        assert _events(manager) == ["created"]


class TestRunGates:
    """Tests for ReleaseManager.run_gates()."""

    def test_all_pass(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        run = manager.run_gates(TAG, user="ci")

        assert run.passed
        assert [r.gate for r in run.results] == [
            GateName.TESTS,
            GateName.SECURITY,
            GateName.COVERAGE,
            GateName.QA_APPROVAL,
        ]
        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_PASSED
        assert release.gate_results == run
        assert _events(manager) == ["created", "gates-passed"]

    def test_gates_running_is_not_audited(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        assert "gates-running" not in _events(manager)

    def test_failure_records_failed_gates(self, make_manager: MakeManager) -> None:
        manager = make_manager(failing=("security",))
        manager.start_release(TAG, "abc123")
        run = manager.run_gates(TAG)

        assert not run.passed
        assert run.failed_gates == [GateName.SECURITY]
        entry = manager.ledger.get_latest_event(TAG)
        assert entry is not None
        assert entry.event == "gates-failed"
        assert entry.metadata["passed"] is False
        statuses = {g["gate"]: g["status"] for g in entry.metadata["gate_results"]}
        assert statuses["security"] == "fail"
        assert statuses["tests"] == "pass"

    def test_only_from_pending(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        with pytest.raises(StateError):
            manager.run_gates(TAG)

    def test_unknown_tag(self, manager: ReleaseManager) -> None:
        with pytest.raises(NotFoundError):
            manager.run_gates("v9.9.9")

    def test_tier_gates_used(self, manager: ReleaseManager) -> None:
        manager.start_release("v1.0.0-beta.1", "abc123")
        run = manager.run_gates("v1.0.0-beta.1")
        assert [r.gate for r in run.results] == [GateName.TESTS, GateName.SECURITY]

    def test_runner_crash_restores_pending(self, make_manager: MakeManager) -> None:
        def crash(release: Release) -> bool:
            raise RuntimeError("executor lost")

        runner = CallableGateRunner(
            {"tests": lambda r: True, "security": crash, "coverage": lambda r: True,
             "qa-approval": lambda r: True}
        )
        manager = make_manager(runner=runner)
        manager.start_release(TAG, "abc123")

        with pytest.raises(UpstreamError):
            manager.run_gates(TAG)
        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.PENDING
        assert _events(manager) == ["created"]

    def test_auto_deploy(self, make_manager: MakeManager, release_config) -> None:
        deployer = RecordingDeployer()
        manager = make_manager(config=release_config, deployer=deployer, domain="example.com")
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)

        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.DEPLOYED
        assert release.preview_url == "qa-v1.0.0-rc.1.example.com"
        assert deployer.calls == [(TAG, "qa-v1.0.0-rc.1.example.com")]
        assert _events(manager) == ["created", "gates-passed", "deployed"]

    def test_auto_deploy_failure_keeps_gate_result(
        self, make_manager: MakeManager, release_config
    ) -> None:
        manager = make_manager(
            config=release_config, deployer=RecordingDeployer(RuntimeError("cluster down"))
        )
        manager.start_release(TAG, "abc123")
        with pytest.raises(UpstreamError, match="preview_deployer"):
            manager.run_gates(TAG)

        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_PASSED
        assert _events(manager) == ["created", "gates-passed"]


class TestRetryGates:
    """Tests for ReleaseManager.retry_gates()."""

    def test_retry_reruns_only_failed_gates(self, make_manager: MakeManager) -> None:
        calls: list[str] = []
        outcomes = {"security": [False, True]}

        def checker(name: str) -> Callable[[Release], bool]:
            def check(release: Release) -> bool:
                calls.append(name)
                queued = outcomes.get(name)
                return queued.pop(0) if queued else True

            return check

        gates = ("tests", "security", "coverage", "qa-approval")
        runner = CallableGateRunner({g: checker(g) for g in gates})
        manager = make_manager(runner=runner)
        manager.start_release(TAG, "abc123")
        assert not manager.run_gates(TAG).passed

        calls.clear()
        run = manager.retry_gates(TAG, user="dev")
        assert calls == ["security"]
        assert run.passed
        assert len(run.results) == 4

        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_PASSED
        entry = manager.ledger.get_latest_event(TAG)
        assert entry is not None
        assert entry.metadata["retry"] is True

    def test_retry_still_failing(self, make_manager: MakeManager) -> None:
        manager = make_manager(failing=("coverage",))
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        run = manager.retry_gates(TAG)
        assert not run.passed
        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_FAILED
        assert _events(manager) == ["created", "gates-failed", "gates-failed"]

    @pytest.mark.parametrize("advance", [False, True])
    def test_retry_requires_gates_failed(self, manager: ReleaseManager, advance: bool) -> None:
        manager.start_release(TAG, "abc123")
        if advance:
            manager.run_gates(TAG)
        with pytest.raises(StateError):
            manager.retry_gates(TAG)


class TestReview:
    """Deploy, accept and reject."""

    @pytest.fixture
    def passed(self, manager: ReleaseManager) -> ReleaseManager:
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        return manager

    def test_deploy_preview(self, passed: ReleaseManager) -> None:
        url = passed.deploy_preview(TAG, user="ci")
        assert url == "qa-v1.0.0-rc.1.localhost"
        release = passed.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.DEPLOYED
        entry = passed.ledger.get_latest_event(TAG)
        assert entry is not None
        assert entry.metadata == {"preview_url": url}

    def test_deploy_requires_gates_passed(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        with pytest.raises(StateError):
            manager.deploy_preview(TAG)

    def test_failed_deployer_leaves_state(self, make_manager: MakeManager) -> None:
        manager = make_manager(deployer=RecordingDeployer(RuntimeError("no capacity")))
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        with pytest.raises(UpstreamError):
            manager.deploy_preview(TAG)
        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_PASSED

    def test_accept_from_gates_passed(self, passed: ReleaseManager) -> None:
        release = passed.accept_release(TAG, reviewer="qa-lead")
        assert release.state == ReleaseState.ACCEPTED
        assert release.reviewer == "qa-lead"
        entry = passed.ledger.get_latest_event(TAG)
        assert entry is not None
        assert (entry.event, entry.user) == ("accepted", "qa-lead")

    def test_accept_from_deployed(self, passed: ReleaseManager) -> None:
        passed.deploy_preview(TAG)
        assert passed.accept_release(TAG, "qa-lead").state == ReleaseState.ACCEPTED

    def test_accept_requires_passing_gates(self, make_manager: MakeManager) -> None:
        manager = make_manager(failing=("tests",))
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        with pytest.raises(StateError, match="gates-failed"):
            manager.accept_release(TAG, "qa-lead")

    def test_reject(self, passed: ReleaseManager) -> None:
        release = passed.reject_release(TAG, "qa-lead", "  login page broken  ")
        assert release.state == ReleaseState.REJECTED
        assert release.rejection_reason == "login page broken"
        entry = passed.ledger.get_latest_event(TAG)
        assert entry is not None
        assert entry.metadata == {"reviewer": "qa-lead", "reason": "login page broken"}

    def test_reject_from_gates_failed(self, make_manager: MakeManager) -> None:
        manager = make_manager(failing=("tests",))
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        assert manager.reject_release(TAG, "qa", "tests fail").state == ReleaseState.REJECTED

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_reject_requires_reason(self, passed: ReleaseManager, reason: str) -> None:
        with pytest.raises(ReasonRequiredError) as exc_info:
            passed.reject_release(TAG, "qa-lead", reason)
        assert exc_info.value.exit_code == 4
        release = passed.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_PASSED

    def test_terminal_after_reject(self, passed: ReleaseManager) -> None:
        passed.reject_release(TAG, "qa-lead", "broken")
        with pytest.raises(StateError):
            passed.accept_release(TAG, "qa-lead")
        with pytest.raises(StateError):
            passed.promote(TAG)


class TestPromote:
    """Tests for ReleaseManager.promote()."""

    def _accepted(self, manager: ReleaseManager, tag: str = TAG) -> None:
        manager.start_release(tag, "abc123")
        manager.run_gates(tag)
        manager.accept_release(tag, "qa-lead")

    def test_promote_rc(self, manager: ReleaseManager) -> None:
        self._accepted(manager)
        release = manager.promote(TAG, user="release-bot")
        assert release.state == ReleaseState.PROMOTED
        assert release.promoted_tag == "v1.0.0"
        assert _events(manager) == ["created", "gates-passed", "accepted", "promoted"]
        entry = manager.ledger.get_latest_event(TAG)
        assert entry is not None
        assert entry.metadata == {"promoted_tag": "v1.0.0"}

    def test_only_rc_promotes(self, manager: ReleaseManager) -> None:
        self._accepted(manager, "v1.0.0-beta.1")
        with pytest.raises(StateError, match="only rc releases"):
            manager.promote("v1.0.0-beta.1")

    def test_requires_accepted(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        with pytest.raises(StateError):
            manager.promote(TAG)

    def test_promote_twice(self, manager: ReleaseManager) -> None:
        self._accepted(manager)
        manager.promote(TAG)
        with pytest.raises(StateError):
            manager.promote(TAG)


class TestListing:
    def test_list_newest_first(self, manager: ReleaseManager) -> None:
        for tag in ("v1.0.0-rc.1", "v1.1.0-beta.1", "v1.0.0-rc.2", "v0.9.0-dev.3"):
            manager.start_release(tag, "abc123")
        assert [r.tag for r in manager.list_releases()] == [
            "v1.1.0-beta.1",
            "v1.0.0-rc.2",
            "v1.0.0-rc.1",
            "v0.9.0-dev.3",
        ]

    def test_get_missing(self, manager: ReleaseManager) -> None:
        assert manager.get_release(TAG) is None


class TestLedgerFailure:
    """A state change is only kept if its audit entry was written."""

    @pytest.fixture
    def storage(self) -> FlakyStorage:
        return FlakyStorage()

    @pytest.fixture
    def flaky(
        self,
        storage: FlakyStorage,
        manual_deploy_config,
        make_runner: Callable[..., CallableGateRunner],
    ) -> ReleaseManager:
        return ReleaseManager(
            manual_deploy_config, make_runner(), AuditLedger(storage), InMemoryReleaseStore()
        )

    def test_create_discarded(self, flaky: ReleaseManager, storage: FlakyStorage) -> None:
        storage.fail = True
        with pytest.raises(UpstreamError):
            flaky.start_release(TAG, "abc123")
        assert flaky.get_release(TAG) is None

        storage.fail = False
        flaky.start_release(TAG, "abc123")

    def test_gate_result_rolled_back(self, flaky: ReleaseManager, storage: FlakyStorage) -> None:
        flaky.start_release(TAG, "abc123")
        storage.fail = True
        with pytest.raises(UpstreamError):
            flaky.run_gates(TAG)
        release = flaky.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.PENDING

    def test_accept_rolled_back(self, flaky: ReleaseManager, storage: FlakyStorage) -> None:
        flaky.start_release(TAG, "abc123")
        flaky.run_gates(TAG)
        storage.fail = True
        with pytest.raises(UpstreamError):
            flaky.accept_release(TAG, "qa-lead")
        release = flaky.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_PASSED
        assert flaky.ledger.verify_integrity().valid


class TestStoreFailure:
    """A failed snapshot write never strands a release mid-transition."""

    def test_outcome_save_failure_restores_pending(self, make_manager: MakeManager) -> None:
        store = FailingStore(ReleaseState.GATES_PASSED)
        manager = make_manager(store=store)
        manager.start_release(TAG, "abc123")

        with pytest.raises(UpstreamError, match="release_store"):
            manager.run_gates(TAG)
        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.PENDING
        assert _events(manager) == ["created"]

        assert manager.run_gates(TAG).passed
        assert _events(manager) == ["created", "gates-passed"]

    def test_retry_save_failure_restores_gates_failed(self, make_manager: MakeManager) -> None:
        store = FailingStore()
        manager = make_manager(failing=("security",), store=store)
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)

        store.fail_on.add(ReleaseState.GATES_FAILED)
        with pytest.raises(UpstreamError):
            manager.retry_gates(TAG)
        release = manager.get_release(TAG)
        assert release is not None
        assert release.state == ReleaseState.GATES_FAILED

        assert not manager.retry_gates(TAG).passed


class TestConcurrency:
    """Per-tag serialization."""

    def test_accept_and_reject_race(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)

        barrier = threading.Barrier(2)
        outcomes: dict[str, Any] = {}

        def attempt(name: str, fn: Callable[[], Release]) -> None:
            barrier.wait()
            try:
                outcomes[name] = fn()
            except StateError as e:
                outcomes[name] = e

        threads = [
            threading.Thread(
                target=attempt, args=("accept", lambda: manager.accept_release(TAG, "qa-1"))
            ),
            threading.Thread(
                target=attempt,
                args=("reject", lambda: manager.reject_release(TAG, "qa-2", "broken")),
            ),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        errors = [v for v in outcomes.values() if isinstance(v, StateError)]
        assert len(errors) == 1
        release = manager.get_release(TAG)
        assert release is not None
        assert release.state in (ReleaseState.ACCEPTED, ReleaseState.REJECTED)
        decisions = [e for e in _events(manager) if e in ("accepted", "rejected")]
        assert decisions == [release.state.value]

    def test_different_tags_proceed_independently(self, manager: ReleaseManager) -> None:
        tags = [f"v1.{n}.0-rc.1" for n in range(6)]
        barrier = threading.Barrier(len(tags))
        errors: list[BaseException] = []

        def lifecycle(tag: str) -> None:
            barrier.wait()
            try:
                manager.start_release(tag, "abc123")
                manager.run_gates(tag)
                manager.accept_release(tag, "qa-lead")
                manager.promote(tag)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=lifecycle, args=(t,)) for t in tags]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert all(r.state == ReleaseState.PROMOTED for r in manager.list_releases())
        assert manager.ledger.verify_integrity().entries_checked == len(tags) * 4

    def test_notifications_sent_outside_tag_lock(self, make_manager: MakeManager) -> None:
        config = load_release_config(
            {
                "release": {
                    "tiers": {"rc": {"autoDeploy": False}},
                    "notifications": {"onGatesFailed": ["#qa"]},
                }
            }
        )
        outcomes: list[Any] = []

        class RejectingSender:
            """Rejects the release from another thread while notifying."""

            def send(
                self, event: str, channel: str, message: dict[str, Any]
            ) -> NotificationResult:
                def reject() -> None:
                    outcomes.append(manager.reject_release(TAG, "qa-lead", "broken"))

                worker = threading.Thread(target=reject)
                worker.start()
                worker.join(timeout=5)
                outcomes.append(worker.is_alive())
                return NotificationResult(event=event, channel=channel, sent=True)

        manager = make_manager(
            failing=("security",),
            config=config,
            notifier=ReleaseNotifier(config, RejectingSender()),
        )
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)

        rejected, still_waiting = outcomes
        assert still_waiting is False
        assert rejected.state == ReleaseState.REJECTED

    def test_tag_locks_released(self, manager: ReleaseManager) -> None:
        manager.start_release(TAG, "abc123")
        manager.run_gates(TAG)
        for tag in ("v9.9.9", "v8.8.8-rc.1"):
            with pytest.raises(NotFoundError):
                manager.accept_release(tag, "qa-lead")
        assert manager._tag_locks == {}
