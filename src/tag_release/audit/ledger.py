"""Hash-chained, append-only audit ledger for release events.

Every entry stores the checksum of the entry before it, so editing, deleting
or reordering any stored entry breaks the chain at that position.

Checksum:
    sha256 over canonical JSON (sorted keys, compact separators) of
    ``{id, event, tag, user, timestamp, metadata, previousChecksum}`` with the
    timestamp rendered as ISO-8601 UTC.

Concurrency:
    record_event() is the only mutation entry point. It reads the tail,
    builds the entry, persists it and advances the tail inside one lock, so
    two concurrent writers can never chain to the same predecessor.

Example:
    >>> ledger = AuditLedger()
    >>> ledger.record_event("v1.0.0-rc.1", "created", "ci", {"commit": "abc123"})
    >>> ledger.verify_integrity().valid
    True
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from tag_release.audit.export import export_entries
from tag_release.audit.storage import InMemoryLedgerStorage, LedgerStorage
from tag_release.errors import IntegrityError, ReleaseError, UpstreamError
from tag_release.schemas.audit import (
    AuditEntry,
    AuditSummaryEntry,
    ExportFormat,
    IntegrityReport,
    TamperedEntry,
)

logger = structlog.get_logger(__name__)

GATE_RESULTS_KEY = "gate_results"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_entry_id() -> str:
    return f"evt-{uuid.uuid4().hex}"


def _canonical_timestamp(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _normalize_metadata(details: dict[str, Any] | None) -> dict[str, Any]:
    """Reduce details to JSON-native values so stored and hashed forms agree."""
    if not details:
        return {}
    normalized: dict[str, Any] = json.loads(json.dumps(details, default=str))
    return normalized


def compute_checksum(
    entry_id: str,
    event: str,
    tag: str,
    user: str,
    timestamp: datetime,
    metadata: dict[str, Any],
    previous_checksum: str | None,
) -> str:
    """SHA-256 hex digest of an entry's canonical form."""
    payload = {
        "id": entry_id,
        "event": event,
        "tag": tag,
        "user": user,
        "timestamp": _canonical_timestamp(timestamp),
        "metadata": metadata,
        "previousChecksum": previous_checksum,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def entry_checksum(entry: AuditEntry, previous_checksum: str | None) -> str:
    """Recompute the checksum of a stored entry against ``previous_checksum``."""
    return compute_checksum(
        entry.id,
        entry.event,
        entry.tag,
        entry.user,
        entry.timestamp,
        entry.metadata,
        previous_checksum,
    )


class AuditLedger:
    """Tamper-evident release history.

    Args:
        storage: Persistence backend. Defaults to in-memory storage.
        clock: Returns the timestamp for new entries (UTC).
        id_factory: Returns a unique id for new entries.

    Raises:
        UpstreamError: If the existing storage contents cannot be read.
    """

    def __init__(
        self,
        storage: LedgerStorage | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_entry_id,
    ) -> None:
        self._storage: LedgerStorage = storage if storage is not None else InMemoryLedgerStorage()
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._log = logger.bind(storage=type(self._storage).__name__)

        existing = self._read_storage()
        self._tail: str | None = existing[-1].checksum if existing else None

    @property
    def tail_checksum(self) -> str | None:
        """Checksum of the most recent entry, None for an empty ledger."""
        return self._tail

    def _read_storage(self) -> list[AuditEntry]:
        try:
            return self._storage.read_all()
        except ReleaseError:
            raise
        except Exception as e:
            raise UpstreamError("ledger_storage", str(e)) from e

    def _entries(self) -> list[AuditEntry]:
        with self._lock:
            return self._read_storage()

    def record_event(
        self,
        tag: str,
        action: str,
        user: str,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Append one event to the ledger.

        Args:
            tag: Release tag the event concerns.
            action: Event name (created, gates-passed, accepted, denied, ...).
            user: Identity that triggered the event.
            details: Action-specific metadata. Non-JSON values are stringified.

        Returns:
            The stored entry.

        Raises:
            UpstreamError: If storage rejects the append. The tail is unchanged.
        """
        metadata = _normalize_metadata(details)

        with self._lock:
            entry_id = self._id_factory()
            timestamp = self._clock()
            checksum = compute_checksum(
                entry_id, action, tag, user, timestamp, metadata, self._tail
            )
            entry = AuditEntry(
                id=entry_id,
                event=action,
                tag=tag,
                user=user,
                timestamp=timestamp,
                metadata=metadata,
                previous_checksum=self._tail,
                checksum=checksum,
            )
            try:
                self._storage.append(entry)
            except Exception as e:
                self._log.error(
                    "audit_append_failed",
                    tag=tag,
                    action=action,
                    error=str(e),
                )
                raise UpstreamError("ledger_storage", str(e)) from e
            self._tail = checksum

        self._log.info("audit_event_recorded", tag=tag, action=action, user=user, id=entry_id)
        return entry

    def get_audit_trail(self, tag: str) -> list[AuditEntry]:
        """All entries for ``tag`` in the order they were recorded."""
        return [e for e in self._entries() if e.tag == tag]

    def get_latest_event(self, tag: str) -> AuditEntry | None:
        trail = self.get_audit_trail(tag)
        return trail[-1] if trail else None

    def get_summary(self) -> list[AuditSummaryEntry]:
        """Latest event per tag, in order of first appearance."""
        latest: dict[str, AuditEntry] = {}
        for entry in self._entries():
            latest[entry.tag] = entry
        return [
            AuditSummaryEntry(
                tag=tag,
                status=entry.event,
                last_event=entry.event,
                last_updated=entry.timestamp,
            )
            for tag, entry in latest.items()
        ]

    def query(
        self,
        from_: datetime | None = None,
        to: datetime | None = None,
        user: str | None = None,
        tag: str | None = None,
        event: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """Filter entries by time range, user, tag and event, then paginate.

        Args:
            from_: Inclusive lower bound on the entry timestamp. Naive values are
                treated as UTC.
            to: Inclusive upper bound on the entry timestamp. Naive values are
                treated as UTC.
            user: Exact user match.
            tag: Exact tag match.
            event: Exact event match.
            limit: Maximum number of entries returned.
            offset: Entries skipped before ``limit`` is applied.

        Raises:
            ValueError: If ``limit`` or ``offset`` is negative.
        """
        if offset < 0 or (limit is not None and limit < 0):
            raise ValueError("limit and offset must be non-negative")

        results = self._entries()
        if from_ is not None:
            lower = _as_utc(from_)
            results = [e for e in results if e.timestamp >= lower]
        if to is not None:
            upper = _as_utc(to)
            results = [e for e in results if e.timestamp <= upper]
        if user is not None:
            results = [e for e in results if e.user == user]
        if tag is not None:
            results = [e for e in results if e.tag == tag]
        if event is not None:
            results = [e for e in results if e.event == event]

        results = results[offset:]
        if limit is not None:
            results = results[:limit]
        return results

    def verify_integrity(self) -> IntegrityReport:
        """Walk the whole ledger and recompute every checksum.

        Each entry is checked against the stored checksum of its predecessor,
        so a single edited entry is reported at its own index only.
        """
        entries = self._entries()
        tampered: list[TamperedEntry] = []
        previous: str | None = None

        for index, entry in enumerate(entries):
            reasons = []
            if entry.previous_checksum != previous:
                reasons.append("previous_checksum does not link to the preceding entry")
            if entry_checksum(entry, previous) != entry.checksum:
                reasons.append("checksum mismatch")
            if reasons:
                tampered.append(TamperedEntry(index=index, entry=entry, reason="; ".join(reasons)))
            previous = entry.checksum

        report = IntegrityReport(
            valid=not tampered,
            entries_checked=len(entries),
            tampered_entries=tampered,
        )
        if tampered:
            self._log.warning(
                "audit_integrity_failed",
                entries_checked=len(entries),
                tampered=[t.index for t in tampered],
            )
        else:
            self._log.debug("audit_integrity_verified", entries_checked=len(entries))
        return report

    def require_integrity(self) -> IntegrityReport:
        """Verify the ledger and raise if it does not verify.

        Raises:
            IntegrityError: Listing the indexes of every tampered entry.
        """
        report = self.verify_integrity()
        if not report.valid:
            raise IntegrityError([t.index for t in report.tampered_entries])
        return report

    def generate_report(self, tag: str) -> str:
        """Markdown release report: status, gate results and event timeline."""
        events = self.get_audit_trail(tag)
        if not events:
            return f"# Release Report: {tag}\n\nNo events recorded.\n"

        lines = [f"# Release Report: {tag}", "", f"**Status:** {events[-1].event}", ""]

        gate_rows = []
        for entry in events:
            for result in entry.metadata.get(GATE_RESULTS_KEY, []):
                duration = result.get("duration_ms")
                gate_rows.append(
                    f"| {result.get('gate')} | {result.get('status')} | "
                    f"{f'{duration}ms' if duration is not None else '-'} |"
                )
        if gate_rows:
            lines += [
                "## Gate Results",
                "",
                "| Gate | Status | Duration |",
                "|------|--------|----------|",
            ]
            lines += gate_rows
            lines.append("")

        lines += ["## Event Timeline", ""]
        for entry in events:
            lines += [
                f"### {entry.event}",
                "",
                f"- **Timestamp:** {entry.timestamp.isoformat()}",
                f"- **User:** {entry.user}",
            ]
            for key, value in entry.metadata.items():
                if key == GATE_RESULTS_KEY:
                    continue
                display = json.dumps(value) if isinstance(value, (dict, list)) else value
                lines.append(f"- **{key}:** {display}")
            lines.append("")

        return "\n".join(lines)

    def export(
        self,
        fmt: ExportFormat | str = ExportFormat.JSON,
        *,
        host: str | None = None,
        index: str | None = None,
        **filters: Any,
    ) -> str:
        """Export entries matching ``filters`` (see query()) in ``fmt``.

        Raises:
            FormatError: If ``fmt`` is unsupported.
        """
        return export_entries(self.query(**filters), fmt, host=host, index=index)


__all__ = ["AuditLedger", "compute_checksum", "entry_checksum"]
