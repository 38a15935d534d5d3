"""Pydantic schemas for releases, configuration and the audit ledger."""

from __future__ import annotations

from tag_release.schemas.audit import (
    AuditEntry,
    AuditSummaryEntry,
    ExportFormat,
    IntegrityReport,
    TamperedEntry,
)
from tag_release.schemas.config import (
    NOTIFICATION_EVENTS,
    ConfigValidationResult,
    DeploymentStrategy,
    ReleaseConfig,
    TierPolicy,
)
from tag_release.schemas.release import (
    VALID_GATE_NAMES,
    GateName,
    GateResult,
    GateRunResult,
    GateStatus,
    ParsedTag,
    Prerelease,
    Release,
    ReleaseState,
)

__all__ = [
    # Audit
    "AuditEntry",
    "AuditSummaryEntry",
    "ExportFormat",
    "IntegrityReport",
    "TamperedEntry",
    # Config
    "ConfigValidationResult",
    "DeploymentStrategy",
    "NOTIFICATION_EVENTS",
    "ReleaseConfig",
    "TierPolicy",
    # Release
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
