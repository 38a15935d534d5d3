"""Unit tests for SIEM export formats."""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone

import pytest

from tag_release.audit import AuditLedger
from tag_release.audit.export import CSV_HEADERS, cef_line, export_entries, to_json
from tag_release.errors import FormatError
from tag_release.schemas.audit import AuditEntry

T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


def _entry(**overrides: object) -> AuditEntry:
    fields: dict[str, object] = {
        "id": "evt-1",
        "event": "accepted",
        "tag": "v1.0.0-rc.1",
        "user": "qa-lead",
        "timestamp": T0,
        "metadata": {},
        "previous_checksum": None,
        "checksum": "abc",
    }
    fields.update(overrides)
    return AuditEntry.model_validate(fields)


class TestJsonExport:
    def test_envelope(self) -> None:
        exported_at = datetime(2026, 10, 19, tzinfo=timezone.utc)
        payload = json.loads(to_json([_entry(), _entry(id="evt-2")], exported_at=exported_at))
        assert payload["totalEntries"] == 2
        assert payload["exportedAt"] == exported_at.isoformat()
        assert payload["entries"][0]["tag"] == "v1.0.0-rc.1"

    def test_empty(self) -> None:
        payload = json.loads(export_entries([], "json"))
        assert payload["entries"] == []
        assert payload["totalEntries"] == 0


class TestCsvExport:
    def test_header_and_rows(self) -> None:
        text = export_entries([_entry()], "csv")
        rows = list(csv.reader(io.StringIO(text)))
        assert tuple(rows[0]) == CSV_HEADERS
        assert rows[1] == ["evt-1", "accepted", "v1.0.0-rc.1", "qa-lead", T0.isoformat()]

    def test_quotes_commas_and_quotes(self) -> None:
        text = export_entries([_entry(user='Doe, "JD"')], "csv")
        assert '"Doe, ""JD"""' in text
        rows = list(csv.reader(io.StringIO(text)))
        assert rows[1][3] == 'Doe, "JD"'


class TestCefExport:
    def test_line_layout(self) -> None:
        line = cef_line(_entry())
        header, extension = line.rsplit("|", 1)
        assert header == "CEF:0|TLC|ReleaseAudit|1.0|accepted|Release accepted|2"
        assert f"rt={int(T0.timestamp() * 1000)}" in extension
        assert "suser=qa-lead" in extension
        assert "cs1=v1.0.0-rc.1" in extension
        assert "cs1Label=tag" in extension
        assert "externalId=evt-1" in extension

    @pytest.mark.parametrize(
        ("event", "severity"),
        [
            ("created", 1),
            ("gates-passed", 1),
            ("deployed", 2),
            ("promoted", 3),
            ("rejected", 5),
            ("gates-failed", 7),
            ("something-else", 5),
        ],
    )
    def test_severity(self, event: str, severity: int) -> None:
        header = cef_line(_entry(event=event)).split("|")
        assert header[6] == str(severity)

    def test_escapes_extension_values(self) -> None:
        line = cef_line(_entry(user="a=b|c\\d\ne"))
        assert "suser=a\\=b\\|c\\\\d\\ne" in line

    def test_one_line_per_entry(self) -> None:
        text = export_entries([_entry(), _entry(id="evt-2")], "cef")
        assert len(text.splitlines()) == 2


class TestSplunkExport:
    def test_hec_events(self) -> None:
        text = export_entries([_entry()], "splunk", host="ci-01", index="releases")
        event = json.loads(text.splitlines()[0])
        assert event["time"] == T0.timestamp()
        assert event["source"] == "tlc"
        assert event["sourcetype"] == "tlc:audit"
        assert event["host"] == "ci-01"
        assert event["index"] == "releases"
        assert event["event"]["id"] == "evt-1"

    def test_host_and_index_optional(self) -> None:
        event = json.loads(export_entries([_entry()], "splunk"))
        assert "host" not in event
        assert "index" not in event


class TestExportEntries:
    def test_unsupported_format(self) -> None:
        with pytest.raises(FormatError, match="Unsupported export format: xml"):
            export_entries([], "xml")

    def test_ledger_export_applies_filters(self) -> None:
        ledger = AuditLedger()
        ledger.record_event("v1.0.0-rc.1", "created", "ci")
        ledger.record_event("v2.0.0-rc.1", "created", "ci")
        payload = json.loads(ledger.export("json", tag="v2.0.0-rc.1"))
        assert [e["tag"] for e in payload["entries"]] == ["v2.0.0-rc.1"]
