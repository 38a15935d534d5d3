"""Audit ledger subcommands.

Example:
    $ tag-release audit verify
    $ tag-release audit export --format cef --tag v1.0.0-rc.1
"""

from __future__ import annotations

import click

from tag_release.cli.utils import run_command
from tag_release.schemas.audit import ExportFormat


@click.group(name="audit", help="Audit ledger commands.")
def audit() -> None:
    pass


@audit.command(name="verify", help="Recompute every checksum in the audit ledger.")
@click.pass_context
def verify_command(ctx: click.Context) -> None:
    run_command(ctx, "verify", {})


@audit.command(name="export", help="Export ledger entries for a SIEM.")
@click.option(
    "--format",
    "fmt",
    type=click.Choice([f.value for f in ExportFormat]),
    default=ExportFormat.JSON.value,
    show_default=True,
)
@click.option("--tag", default=None, help="Only entries for this tag.")
@click.option("--user", "entry_user", default=None, help="Only entries by this user.")
@click.option("--event", default=None, help="Only entries with this event.")
@click.option("--from", "from_", default=None, help="ISO-8601 lower time bound.")
@click.option("--to", default=None, help="ISO-8601 upper time bound.")
@click.option("--host", default=None, help="Splunk host field.")
@click.option("--index", default=None, help="Splunk index field.")
@click.pass_context
def export_command(
    ctx: click.Context,
    fmt: str,
    tag: str | None,
    entry_user: str | None,
    event: str | None,
    from_: str | None,
    to: str | None,
    host: str | None,
    index: str | None,
) -> None:
    run_command(
        ctx,
        "export",
        {
            "format": fmt,
            "tag": tag,
            "user": entry_user,
            "event": event,
            "from": from_,
            "to": to,
            "host": host,
            "index": index,
        },
        raw=True,
    )


__all__ = ["audit"]
