"""Append-only storage backends for the audit ledger.

The ledger owns chaining and locking; storages only persist entries in order.

Key Components:
    LedgerStorage: Protocol every backend implements
    InMemoryLedgerStorage: Process-local list (tests, embedding)
    JsonlLedgerStorage: One JSON object per line in a file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import ValidationError

from tag_release.errors import UpstreamError
from tag_release.schemas.audit import AuditEntry

logger = structlog.get_logger(__name__)


@runtime_checkable
class LedgerStorage(Protocol):
    """Persistence backend for ledger entries.

    Implementations are not required to be thread-safe; AuditLedger
    serializes every call.
    """

    def append(self, entry: AuditEntry) -> None:
        """Persist ``entry`` after all previously appended entries."""
        ...

    def read_all(self) -> list[AuditEntry]:
        """Return every persisted entry in append order."""
        ...


class InMemoryLedgerStorage:
    """Ledger storage backed by a Python list."""

    def __init__(self, entries: list[AuditEntry] | None = None) -> None:
        self._entries: list[AuditEntry] = list(entries or [])

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def read_all(self) -> list[AuditEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class JsonlLedgerStorage:
    """Ledger storage in a JSON Lines file.

    Each append writes one line and flushes it to disk before returning.

    Example:
        >>> storage = JsonlLedgerStorage(Path(".tlc/audit/releases.jsonl"))
        >>> ledger = AuditLedger(storage)
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: AuditEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
            f.flush()
            os.fsync(f.fileno())

    def read_all(self) -> list[AuditEntry]:
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        with open(self._path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValidationError as e:
                    logger.error(
                        "ledger_line_unreadable",
                        path=str(self._path),
                        line=line_no,
                        error=str(e),
                    )
                    raise UpstreamError(
                        "ledger_storage",
                        f"{self._path}:{line_no} is not a valid ledger entry",
                    ) from e
        return entries


__all__ = ["InMemoryLedgerStorage", "JsonlLedgerStorage", "LedgerStorage"]
