"""Release lifecycle schemas.

Pydantic v2 models for parsed tags, gate results and the Release aggregate
that the ReleaseManager drives through its state machine.

Key Components:
    GateName: Closed set of gate names (tests, security, coverage, qa-approval)
    GateStatus: Gate outcome (pass, fail)
    ReleaseState: Closed set of release states
    ParsedTag: Structured version tag
    GateResult: Single gate outcome
    GateRunResult: Joined outcome of a gate run
    Release: Snapshot of one release
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class GateName(str, Enum):
    """Quality gates a release tier may require.

    Examples:
        >>> GateName("qa-approval")
        <GateName.QA_APPROVAL: 'qa-approval'>
    """

    TESTS = "tests"
    SECURITY = "security"
    COVERAGE = "coverage"
    QA_APPROVAL = "qa-approval"


VALID_GATE_NAMES = frozenset(g.value for g in GateName)


class GateStatus(str, Enum):
    """Gate execution outcome. Anything that is not a pass is a fail."""

    PASS = "pass"
    FAIL = "fail"


class ReleaseState(str, Enum):
    """States of the release state machine.

    ``rejected`` and ``promoted`` are terminal.
    """

    PENDING = "pending"
    GATES_RUNNING = "gates-running"
    GATES_PASSED = "gates-passed"
    GATES_FAILED = "gates-failed"
    DEPLOYED = "deployed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PROMOTED = "promoted"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is defined from this state."""
        return self in (ReleaseState.REJECTED, ReleaseState.PROMOTED)


class Prerelease(BaseModel):
    """Prerelease segment of a tag (``-rc.1`` -> channel ``rc``, number ``1``)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    channel: str = Field(..., min_length=1)
    number: int = Field(..., ge=0)


class ParsedTag(BaseModel):
    """A version tag split into its components.

    Examples:
        >>> tag = ParsedTag(major=1, minor=0, patch=0, raw="v1.0.0")
        >>> tag.tier
        'release'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    major: int = Field(..., ge=0)
    minor: int = Field(..., ge=0)
    patch: int = Field(..., ge=0)
    prerelease: Prerelease | None = Field(default=None)
    raw: str = Field(..., min_length=1)

    @property
    def tier(self) -> str:
        """Release tier derived from the prerelease channel."""
        if self.prerelease is None:
            return "release"
        return self.prerelease.channel

    @property
    def base_version(self) -> str:
        """Tag with the prerelease segment stripped."""
        return f"v{self.major}.{self.minor}.{self.patch}"


class GateResult(BaseModel):
    """Outcome of one gate for one release.

    Attributes:
        gate: Gate that was executed.
        status: pass or fail.
        duration_ms: Execution time in milliseconds.
        detail: Gate-specific output (error text, counts, etc.).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    gate: GateName
    status: GateStatus
    duration_ms: int = Field(default=0, ge=0)
    detail: dict[str, Any] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status == GateStatus.PASS


class GateRunResult(BaseModel):
    """Joined results of a gate run. ``passed`` is true only if every gate passed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    passed: bool
    results: list[GateResult] = Field(default_factory=list)

    @classmethod
    def from_results(cls, results: list[GateResult]) -> GateRunResult:
        return cls(passed=all(r.passed for r in results), results=results)

    @property
    def failed_gates(self) -> list[GateName]:
        return [r.gate for r in self.results if not r.passed]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Release(BaseModel):
    """Snapshot of a release.

    Releases are frozen; the manager produces a new snapshot for every
    transition with ``model_copy(update=...)``.

    Examples:
        >>> release = Release(tag="v1.0.0-rc.1", commit_sha="abc123", tier="rc")
        >>> release.state
        <ReleaseState.PENDING: 'pending'>
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tag: str = Field(..., min_length=1, description="Unique release key")
    commit_sha: str = Field(..., description="Commit the tag points to")
    tier: str = Field(..., min_length=1)
    state: ReleaseState = Field(default=ReleaseState.PENDING)
    gate_results: GateRunResult | None = Field(default=None)
    preview_url: str | None = Field(default=None)
    reviewer: str | None = Field(default=None)
    rejection_reason: str | None = Field(default=None)
    promoted_tag: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def transition(self, state: ReleaseState, **changes: Any) -> Release:
        """Return a new snapshot in ``state`` with ``changes`` applied."""
        return self.model_copy(update={"state": state, "updated_at": _utcnow(), **changes})


__all__ = [
    "GateName",
    "GateResult",
    "GateRunResult",
    "GateStatus",
    "ParsedTag",
    "Prerelease",
    "Release",
    "ReleaseState",
    "VALID_GATE_NAMES",
]
