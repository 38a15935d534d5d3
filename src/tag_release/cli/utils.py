"""CLI utility functions, settings and error handling.

Errors are written as plain text to stderr; command output goes to stdout so
it can be piped. Exit codes follow the ReleaseError hierarchy.

Example:
    from tag_release.cli.utils import error_exit, ExitCode

    if not path.exists():
        error_exit("Config not found", exit_code=ExitCode.FORMAT_ERROR, path=str(path))
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from tag_release.audit import AuditLedger, JsonlLedgerStorage
from tag_release.authorization import Caller
from tag_release.commands import CommandContext, CommandResult, execute_tag_command
from tag_release.config import load_release_config_file
from tag_release.errors import ReleaseError
from tag_release.gates import CommandGateRunner
from tag_release.manager import ReleaseManager
from tag_release.notifier import ReleaseNotifier, WebhookSender
from tag_release.store import JsonReleaseStore

if TYPE_CHECKING:
    from typing import NoReturn

LEDGER_FILE = Path("audit") / "releases.jsonl"
RELEASES_DIR = Path("releases")


class ExitCode(IntEnum):
    """Exit codes for CLI commands, one per error category."""

    SUCCESS = 0
    """Command completed successfully."""

    GENERAL_ERROR = 1
    """Unexpected failure."""

    FORMAT_ERROR = 2
    """Malformed tag, configuration or arguments."""

    NOT_FOUND = 3
    """Release not found."""

    STATE_ERROR = 4
    """Operation not valid in the release's current state."""

    AUTHORIZATION_ERROR = 5
    """Role not permitted for the action."""

    INTEGRITY_ERROR = 6
    """Audit ledger failed verification."""

    UPSTREAM_ERROR = 7
    """Gate runner, deployer or storage failure."""


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"
    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: int = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with ``exit_code``."""
    error(message, **context)
    sys.exit(exit_code)


def success(message: str) -> None:
    """Print a result message to stdout."""
    click.echo(message)


def default_user() -> str:
    """Caller identity from the environment."""
    return os.environ.get("TAG_RELEASE_USER") or os.environ.get("USER") or "unknown"


@dataclass
class CliSettings:
    """Global options shared by every subcommand."""

    config_path: Path
    state_dir: Path
    user: str
    role: str
    domain: str
    output: str


def build_context(settings: CliSettings) -> CommandContext:
    """Wire the manager, ledger and stores for a CLI invocation.

    Exits with FORMAT_ERROR if the configuration is invalid.
    """
    try:
        config = load_release_config_file(settings.config_path)
        ledger = AuditLedger(JsonlLedgerStorage(settings.state_dir / LEDGER_FILE))
    except ReleaseError as e:
        error_exit(str(e), exit_code=e.exit_code)

    sender = WebhookSender(config.webhooks) if config.webhooks else None
    manager = ReleaseManager(
        config,
        CommandGateRunner(config),
        ledger,
        JsonReleaseStore(settings.state_dir / RELEASES_DIR),
        notifier=ReleaseNotifier(config, sender),
        domain=settings.domain,
    )
    return CommandContext(manager=manager, caller=Caller(name=settings.user, role=settings.role))


def emit_result(result: CommandResult, output: str, raw: bool = False) -> None:
    """Print ``result`` and exit non-zero if it failed.

    Args:
        result: Command outcome.
        output: ``table`` or ``json``.
        raw: Print ``result.data`` verbatim on success (exports).
    """
    if output == "json":
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    elif not result.success:
        error(result.message)
    elif raw:
        click.echo(result.data)
    else:
        success(result.message)

    if not result.success:
        sys.exit(result.exit_code or ExitCode.GENERAL_ERROR)


def run_command(
    ctx: click.Context,
    subcommand: str,
    args: dict[str, Any],
    raw: bool = False,
) -> None:
    """Execute ``subcommand`` with the settings stored on the click context."""
    settings: CliSettings = ctx.obj
    context = build_context(settings)
    result = execute_tag_command(subcommand, args, context)
    emit_result(result, settings.output, raw=raw)


__all__ = [
    "CliSettings",
    "ExitCode",
    "build_context",
    "default_user",
    "emit_result",
    "error",
    "error_exit",
    "run_command",
    "success",
]
