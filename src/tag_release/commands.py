"""Caller boundary for the release pipeline.

execute_tag_command() is what the CLI and other front ends call. It checks
the caller's role once per command, dispatches to the ReleaseManager and turns
every ReleaseError into a ``success=False`` CommandResult carrying the error's
exit code. Denied attempts are written to the audit ledger as ``denied``
events.

Example:
    >>> context = CommandContext(manager=manager, caller=Caller(name="qa-lead", role="qa"))
    >>> result = execute_tag_command("accept", {"tag": "v1.0.0-rc.1"}, context)
    >>> result.success
    True
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from tag_release.authorization import AuthorizationChecker, Caller, ReleaseAction
from tag_release.errors import (
    AuthorizationError,
    FormatError,
    IntegrityError,
    NotFoundError,
    ReleaseError,
    UpstreamError,
)
from tag_release.manager import ReleaseManager
from tag_release.schemas.audit import AuditEntry, ExportFormat
from tag_release.telemetry.sanitization import sanitize_error_message

logger = structlog.get_logger(__name__)

SUBCOMMANDS: dict[ReleaseAction, str] = {
    ReleaseAction.CREATE: "Create a new release from a git tag",
    ReleaseAction.STATUS: "Show release status for a tag or all releases",
    ReleaseAction.GATES: "Run the quality gates for a pending release",
    ReleaseAction.DEPLOY: "Deploy the preview environment for a release",
    ReleaseAction.ACCEPT: "Accept a release after QA review (qa/admin only)",
    ReleaseAction.REJECT: "Reject a release with a reason (qa/admin only)",
    ReleaseAction.PROMOTE: "Promote an accepted RC to a clean version tag",
    ReleaseAction.RETRY: "Re-run failed quality gates for a release",
    ReleaseAction.LIST: "List all releases, newest version first",
    ReleaseAction.HISTORY: "Show the chronological release audit trail",
    ReleaseAction.VERIFY: "Verify the audit ledger checksum chain",
    ReleaseAction.EXPORT: "Export the audit ledger (json, csv, cef, splunk)",
    ReleaseAction.HELP: "Show available subcommands",
}


class CommandResult(BaseModel):
    """Outcome of one command.

    Attributes:
        success: Whether the command completed.
        message: Human-readable summary.
        data: JSON-ready payload (release, list of releases, entries, ...).
        exit_code: 0 on success, otherwise the error's exit code.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    message: str
    data: Any = Field(default=None)
    exit_code: int = Field(default=0, ge=0)


@dataclass
class CommandContext:
    """Dependencies and identity for command execution.

    Attributes:
        manager: Release manager (also gives access to the ledger).
        caller: Who is running the command.
        checker: Role policy consulted before each command.
    """

    manager: ReleaseManager
    caller: Caller
    checker: AuthorizationChecker = field(default_factory=AuthorizationChecker)


Handler = Callable[[Mapping[str, Any], CommandContext], CommandResult]


def _require_arg(args: Mapping[str, Any], name: str, subcommand: str) -> str:
    value = args.get(name)
    if not isinstance(value, str) or not value.strip():
        raise FormatError(f"'{subcommand}' requires a {name}")
    return value.strip()


def _entry_data(entries: list[AuditEntry]) -> list[dict[str, Any]]:
    return [e.model_dump(mode="json") for e in entries]


def _parse_time(value: Any, name: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as e:
        raise FormatError(f"{name} must be an ISO-8601 timestamp: {value}") from e
    return parsed


def _handle_create(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = _require_arg(args, "tag", "create")
    commit = _require_arg(args, "commit", "create")
    manager = context.manager

    release = manager.start_release(tag, commit, user=context.caller.name)
    message = f"Release {tag} created successfully"
    if args.get("run_gates"):
        run = manager.run_gates(tag, user=context.caller.name)
        message += "; gates passed" if run.passed else "; gates failed"
        release = manager.get_release(tag) or release

    return CommandResult(success=True, message=message, data=release.model_dump(mode="json"))


def _handle_status(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = args.get("tag")
    if not tag:
        releases = context.manager.list_releases()
        summary = "\n".join(f"{r.tag}: {r.state.value}" for r in releases)
        return CommandResult(
            success=True,
            message=f"Releases:\n{summary}" if releases else "No releases",
            data=[r.model_dump(mode="json") for r in releases],
        )

    release = context.manager.get_release(tag)
    if release is None:
        raise NotFoundError(tag)
    return CommandResult(
        success=True,
        message=f"Release {tag}: {release.state.value}",
        data=release.model_dump(mode="json"),
    )


def _handle_gates(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = _require_arg(args, "tag", "gates")
    run = context.manager.run_gates(tag, user=context.caller.name)
    if run.passed:
        message = f"Gates passed for {tag}"
    else:
        failed = ", ".join(g.value for g in run.failed_gates)
        message = f"Gates failed for {tag}: {failed}"
    return CommandResult(success=True, message=message, data=run.model_dump(mode="json"))


def _handle_deploy(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = _require_arg(args, "tag", "deploy")
    url = context.manager.deploy_preview(tag, user=context.caller.name)
    return CommandResult(
        success=True,
        message=f"Release {tag} deployed to {url}",
        data={"tag": tag, "preview_url": url},
    )


def _handle_accept(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = _require_arg(args, "tag", "accept")
    release = context.manager.accept_release(tag, context.caller.name)
    return CommandResult(
        success=True,
        message=f"Release {tag} accepted by {context.caller.name}",
        data=release.model_dump(mode="json"),
    )


def _handle_reject(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = _require_arg(args, "tag", "reject")
    release = context.manager.reject_release(tag, context.caller.name, args.get("reason") or "")
    return CommandResult(
        success=True,
        message=f"Release {tag} rejected by {context.caller.name}: {release.rejection_reason}",
        data=release.model_dump(mode="json"),
    )


def _handle_promote(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = _require_arg(args, "tag", "promote")
    release = context.manager.promote(tag, user=context.caller.name)
    return CommandResult(
        success=True,
        message=f"Release {tag} promoted to {release.promoted_tag}",
        data=release.model_dump(mode="json"),
    )


def _handle_retry(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    tag = _require_arg(args, "tag", "retry")
    run = context.manager.retry_gates(tag, user=context.caller.name)
    message = (
        f"Gates passed on retry for {tag}" if run.passed else f"Some gates still failing for {tag}"
    )
    return CommandResult(success=True, message=message, data=run.model_dump(mode="json"))


def _handle_list(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    releases = context.manager.list_releases()
    if not releases:
        return CommandResult(success=True, message="No releases found.", data=[])
    lines = "\n".join(f"  {r.tag}  [{r.state.value}]" for r in releases)
    return CommandResult(
        success=True,
        message=f"Releases:\n{lines}",
        data=[r.model_dump(mode="json") for r in releases],
    )


def _handle_history(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    ledger = context.manager.ledger
    tag = args.get("tag")
    entries = ledger.get_audit_trail(tag) if tag else ledger.query()
    if not entries:
        return CommandResult(success=True, message="No release history found.", data=[])
    lines = "\n".join(
        f"  [{e.timestamp.isoformat()}] {e.tag} {e.event} by {e.user}" for e in entries
    )
    return CommandResult(
        success=True,
        message=f"Release history:\n{lines}",
        data=_entry_data(entries),
    )


def _handle_verify(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    report = context.manager.ledger.verify_integrity()
    data = report.model_dump(mode="json")
    if report.valid:
        return CommandResult(
            success=True,
            message=f"Audit ledger verified: {report.entries_checked} entries intact",
            data=data,
        )
    error = IntegrityError([t.index for t in report.tampered_entries])
    return CommandResult(success=False, message=str(error), data=data, exit_code=error.exit_code)


def _handle_export(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    fmt = args.get("format") or ExportFormat.JSON.value
    text = context.manager.ledger.export(
        fmt,
        host=args.get("host"),
        index=args.get("index"),
        from_=_parse_time(args.get("from"), "from"),
        to=_parse_time(args.get("to"), "to"),
        user=args.get("user"),
        tag=args.get("tag"),
        event=args.get("event"),
    )
    return CommandResult(success=True, message=f"Exported audit ledger as {fmt}", data=text)


def _handle_help(args: Mapping[str, Any], context: CommandContext) -> CommandResult:
    lines = "\n".join(f"  {a.value:<10} {desc}" for a, desc in SUBCOMMANDS.items())
    return CommandResult(
        success=True,
        message=f"tag-release subcommands:\n{lines}",
        data=[{"name": a.value, "description": d} for a, d in SUBCOMMANDS.items()],
    )


HANDLERS: dict[ReleaseAction, Handler] = {
    ReleaseAction.CREATE: _handle_create,
    ReleaseAction.STATUS: _handle_status,
    ReleaseAction.GATES: _handle_gates,
    ReleaseAction.DEPLOY: _handle_deploy,
    ReleaseAction.ACCEPT: _handle_accept,
    ReleaseAction.REJECT: _handle_reject,
    ReleaseAction.PROMOTE: _handle_promote,
    ReleaseAction.RETRY: _handle_retry,
    ReleaseAction.LIST: _handle_list,
    ReleaseAction.HISTORY: _handle_history,
    ReleaseAction.VERIFY: _handle_verify,
    ReleaseAction.EXPORT: _handle_export,
    ReleaseAction.HELP: _handle_help,
}


def _record_denied(
    action: ReleaseAction,
    args: Mapping[str, Any],
    context: CommandContext,
    reason: str | None,
) -> None:
    tag = args.get("tag")
    context.manager.ledger.record_event(
        tag if isinstance(tag, str) else "",
        "denied",
        context.caller.name,
        {"action": action.value, "role": context.caller.role, "reason": reason},
    )


def _failure(error: ReleaseError) -> CommandResult:
    message = str(error)
    if isinstance(error, UpstreamError):
        message = sanitize_error_message(message)
    return CommandResult(success=False, message=message, exit_code=error.exit_code)


def execute_tag_command(
    subcommand: str,
    args: Mapping[str, Any] | None,
    context: CommandContext,
) -> CommandResult:
    """Run one release subcommand on behalf of ``context.caller``.

    Args:
        subcommand: create, status, gates, deploy, accept, reject, promote,
            retry, list, history, verify, export or help.
        args: Subcommand arguments (tag, commit, reason, format, ...).
        context: Manager, caller and role policy.

    Returns:
        CommandResult. Errors are reported in the result, never raised.
    """
    args = args or {}
    try:
        action = ReleaseAction(subcommand)
    except ValueError:
        return CommandResult(
            success=False,
            message=f"Unknown subcommand: '{subcommand}'. Run 'help' for available subcommands.",
            exit_code=FormatError.exit_code,
        )

    log = logger.bind(subcommand=action.value, user=context.caller.name, role=context.caller.role)
    try:
        decision = context.checker.check(action, context.caller)
        if not decision.authorized:
            _record_denied(action, args, context, decision.reason)
            raise AuthorizationError(
                context.caller.name, context.caller.role, action.value, decision.reason
            )
        result = HANDLERS[action](args, context)
    except ReleaseError as e:
        log.info("command_failed", error_type=type(e).__name__, exit_code=e.exit_code)
        return _failure(e)

    log.debug("command_completed", success=result.success)
    return result


__all__ = [
    "CommandContext",
    "CommandResult",
    "HANDLERS",
    "SUBCOMMANDS",
    "execute_tag_command",
]
