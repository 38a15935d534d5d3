"""SIEM-compatible renderings of ledger entries.

Formats:
    json:   {"entries": [...], "exportedAt": iso, "totalEntries": n}
    csv:    id,event,branch,user,timestamp (branch carries the release tag)
    cef:    ArcSight Common Event Format, one event per line
    splunk: Newline-delimited HTTP Event Collector payloads

Example:
    >>> from tag_release.audit.export import export_entries
    >>> text = export_entries(ledger.query(tag="v1.0.0-rc.1"), "cef")
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Sequence
from datetime import datetime, timezone

from tag_release.errors import FormatError
from tag_release.schemas.audit import AuditEntry, ExportFormat

CSV_HEADERS = ("id", "event", "branch", "user", "timestamp")

CEF_VENDOR = "TLC"
CEF_PRODUCT = "ReleaseAudit"
CEF_VERSION = "1.0"

# CEF severity is 0-10: informational 0-3, warning 4-6, critical 7-10
CEF_SEVERITY: dict[str, int] = {
    "created": 1,
    "gates-running": 1,
    "gates-passed": 1,
    "deployed": 2,
    "accepted": 2,
    "promoted": 3,
    "rejected": 5,
    "denied": 5,
    "gates-failed": 7,
}
CEF_DEFAULT_SEVERITY = 5

SPLUNK_SOURCE = "tlc"
SPLUNK_SOURCETYPE = "tlc:audit"


def _escape_cef_header(value: object) -> str:
    if value is None:
        return ""
    return str(value).replace("\\", "\\\\").replace("|", "\\|")


def _escape_cef_extension(value: object) -> str:
    if value is None:
        return ""
    return (
        str(value)
        .replace("\\", "\\\\")
        .replace("|", "\\|")
        .replace("=", "\\=")
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )


def _epoch_ms(timestamp: datetime) -> int:
    return int(timestamp.timestamp() * 1000)


def to_json(entries: Sequence[AuditEntry], exported_at: datetime | None = None) -> str:
    """Render entries as a single JSON document."""
    exported_at = exported_at or datetime.now(timezone.utc)
    payload = {
        "entries": [e.model_dump(mode="json") for e in entries],
        "exportedAt": exported_at.isoformat(),
        "totalEntries": len(entries),
    }
    return json.dumps(payload, indent=2)


def to_csv(entries: Sequence[AuditEntry]) -> str:
    """Render entries as CSV with RFC 4180 quoting."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for entry in entries:
        writer.writerow(
            [entry.id, entry.event, entry.tag, entry.user, entry.timestamp.isoformat()]
        )
    return buffer.getvalue()


def cef_line(entry: AuditEntry) -> str:
    """Render one entry as a CEF line."""
    severity = CEF_SEVERITY.get(entry.event, CEF_DEFAULT_SEVERITY)
    header = "|".join(
        [
            "CEF:0",
            _escape_cef_header(CEF_VENDOR),
            _escape_cef_header(CEF_PRODUCT),
            _escape_cef_header(CEF_VERSION),
            _escape_cef_header(entry.event),
            _escape_cef_header(f"Release {entry.event}"),
            str(severity),
        ]
    )
    extension = " ".join(
        [
            f"rt={_epoch_ms(entry.timestamp)}",
            f"suser={_escape_cef_extension(entry.user)}",
            f"cs1={_escape_cef_extension(entry.tag)}",
            "cs1Label=tag",
            f"externalId={_escape_cef_extension(entry.id)}",
        ]
    )
    return f"{header}|{extension}"


def to_cef(entries: Sequence[AuditEntry]) -> str:
    """Render entries as newline-separated CEF events."""
    return "\n".join(cef_line(e) for e in entries)


def to_splunk(
    entries: Sequence[AuditEntry],
    host: str | None = None,
    index: str | None = None,
) -> str:
    """Render entries as newline-delimited Splunk HEC events."""
    lines = []
    for entry in entries:
        event: dict[str, object] = {
            "time": entry.timestamp.timestamp(),
            "source": SPLUNK_SOURCE,
            "sourcetype": SPLUNK_SOURCETYPE,
        }
        if host:
            event["host"] = host
        if index:
            event["index"] = index
        event["event"] = entry.model_dump(mode="json")
        lines.append(json.dumps(event))
    return "\n".join(lines)


def export_entries(
    entries: Sequence[AuditEntry],
    fmt: ExportFormat | str,
    *,
    host: str | None = None,
    index: str | None = None,
) -> str:
    """Render ``entries`` in ``fmt``.

    Raises:
        FormatError: If ``fmt`` is not a supported export format.
    """
    try:
        export_format = ExportFormat(fmt)
    except ValueError as e:
        supported = ", ".join(f.value for f in ExportFormat)
        raise FormatError(f"Unsupported export format: {fmt}. Supported: {supported}") from e

    if export_format == ExportFormat.JSON:
        return to_json(entries)
    if export_format == ExportFormat.CSV:
        return to_csv(entries)
    if export_format == ExportFormat.CEF:
        return to_cef(entries)
    return to_splunk(entries, host=host, index=index)


__all__ = [
    "CEF_SEVERITY",
    "CSV_HEADERS",
    "cef_line",
    "export_entries",
    "to_cef",
    "to_csv",
    "to_json",
    "to_splunk",
]
