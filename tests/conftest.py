"""Shared fixtures for tag-release tests."""

from __future__ import annotations

from collections.abc import Callable, Generator, Mapping
from typing import Any

import pytest
import structlog

from tag_release.audit import AuditLedger, InMemoryLedgerStorage
from tag_release.config import load_release_config
from tag_release.gates import CallableGateRunner
from tag_release.manager import ReleaseManager
from tag_release.schemas.config import ReleaseConfig
from tag_release.store import InMemoryReleaseStore
from tag_release.telemetry.tracing import reset_tracer

ALL_GATES = ("tests", "security", "coverage", "qa-approval")


@pytest.fixture(autouse=True)
def _reset_telemetry() -> Generator[None, None, None]:
    """Run every test under default logging and drop what it installs."""
    structlog.reset_defaults()
    yield
    reset_tracer()
    structlog.reset_defaults()


@pytest.fixture
def release_config() -> ReleaseConfig:
    """Default tier policies."""
    return load_release_config()


@pytest.fixture
def manual_deploy_config() -> ReleaseConfig:
    """Default policies with auto-deploy disabled for rc and beta."""
    return load_release_config(
        {
            "release": {
                "tiers": {
                    "rc": {"autoDeploy": False},
                    "beta": {"autoDeploy": False},
                }
            }
        }
    )


@pytest.fixture
def make_runner() -> Callable[..., CallableGateRunner]:
    """Build a runner where every gate passes unless listed in ``failing``."""

    def _make(
        failing: tuple[str, ...] = (),
        overrides: Mapping[str, Callable[[Any], Any]] | None = None,
    ) -> CallableGateRunner:
        checkers: dict[str, Callable[[Any], Any]] = {
            gate: (lambda release, passed=gate not in failing: passed) for gate in ALL_GATES
        }
        checkers.update(overrides or {})
        return CallableGateRunner(checkers)

    return _make


@pytest.fixture
def ledger_storage() -> InMemoryLedgerStorage:
    return InMemoryLedgerStorage()


@pytest.fixture
def ledger(ledger_storage: InMemoryLedgerStorage) -> AuditLedger:
    return AuditLedger(ledger_storage)


@pytest.fixture
def make_manager(
    manual_deploy_config: ReleaseConfig,
    make_runner: Callable[..., CallableGateRunner],
    ledger: AuditLedger,
) -> Callable[..., ReleaseManager]:
    """Build a manager over in-memory storage sharing the ``ledger`` fixture."""

    def _make(
        failing: tuple[str, ...] = (),
        config: ReleaseConfig | None = None,
        **kwargs: Any,
    ) -> ReleaseManager:
        return ReleaseManager(
            config or manual_deploy_config,
            kwargs.pop("runner", None) or make_runner(failing),
            ledger,
            kwargs.pop("store", None) or InMemoryReleaseStore(),
            **kwargs,
        )

    return _make


@pytest.fixture
def manager(make_manager: Callable[..., ReleaseManager]) -> ReleaseManager:
    """Manager whose gates all pass, rc/beta without auto-deploy."""
    return make_manager()
