"""Tamper-evident audit ledger for release events.

Example:
    >>> from tag_release.audit import AuditLedger, JsonlLedgerStorage
    >>> ledger = AuditLedger(JsonlLedgerStorage(Path(".tlc/audit/releases.jsonl")))
"""

from __future__ import annotations

from tag_release.audit.export import export_entries
from tag_release.audit.ledger import AuditLedger, compute_checksum, entry_checksum
from tag_release.audit.storage import InMemoryLedgerStorage, JsonlLedgerStorage, LedgerStorage

__all__ = [
    "AuditLedger",
    "InMemoryLedgerStorage",
    "JsonlLedgerStorage",
    "LedgerStorage",
    "compute_checksum",
    "entry_checksum",
    "export_entries",
]
