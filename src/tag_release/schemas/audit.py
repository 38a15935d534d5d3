"""Audit ledger models.

Every pipeline transition is recorded as an AuditEntry. Entries form a single
hash chain: each entry's ``checksum`` covers its own fields plus the
``previous_checksum`` of the entry before it.

Example:
    >>> from tag_release.audit import AuditLedger
    >>> ledger = AuditLedger()
    >>> entry = ledger.record_event("v1.0.0-rc.1", action="created", user="ci")
    >>> entry.previous_checksum is None
    True
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AuditEntry(BaseModel):
    """One immutable ledger entry.

    Attributes:
        id: Unique entry identifier.
        event: Action that was recorded (created, gates-passed, accepted, ...).
        tag: Release tag the event concerns.
        user: User or system identity that triggered the event.
        timestamp: When the event was recorded (UTC).
        metadata: Action-specific details (JSON-native values only).
        previous_checksum: Checksum of the preceding ledger entry, None for the first.
        checksum: SHA-256 over the canonical form of all other fields.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "id": "evt-5f0c8a1e2b7d4c3f",
                    "event": "accepted",
                    "tag": "v1.0.0-rc.1",
                    "user": "qa-lead",
                    "timestamp": "2026-10-18T12:00:00Z",
                    "metadata": {},
                    "previous_checksum": "9b1c...",
                    "checksum": "4e7a...",
                }
            ]
        },
    )

    id: str = Field(..., min_length=1)
    event: str = Field(..., min_length=1)
    tag: str
    user: str
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_checksum: str | None = Field(default=None)
    checksum: str = Field(..., min_length=1)


class AuditSummaryEntry(BaseModel):
    """Latest known state of one tag, derived from its audit trail."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tag: str
    status: str
    last_event: str
    last_updated: datetime


class TamperedEntry(BaseModel):
    """A ledger position whose stored checksum or chain link does not verify."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    index: int = Field(..., ge=0)
    entry: AuditEntry
    reason: str


class IntegrityReport(BaseModel):
    """Result of walking the whole ledger and recomputing every checksum."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    valid: bool
    entries_checked: int = Field(default=0, ge=0)
    tampered_entries: list[TamperedEntry] = Field(default_factory=list)


class ExportFormat(str, Enum):
    """Supported audit export formats."""

    JSON = "json"
    CSV = "csv"
    CEF = "cef"
    SPLUNK = "splunk"


__all__ = [
    "AuditEntry",
    "AuditSummaryEntry",
    "ExportFormat",
    "IntegrityReport",
    "TamperedEntry",
]
