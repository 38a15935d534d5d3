"""Release lifecycle subcommands.

Example:
    $ tag-release create v1.0.0-rc.1 --commit abc123 --run-gates
    $ tag-release --user qa-lead --role qa accept v1.0.0-rc.1
    $ tag-release promote v1.0.0-rc.1
    $ tag-release webhook github push.json
"""

from __future__ import annotations

import json
from typing import IO

import click

from tag_release.cli.utils import (
    CliSettings,
    ExitCode,
    build_context,
    error_exit,
    run_command,
    success,
)
from tag_release.errors import ReleaseError
from tag_release.tag_push import TagPushHandler, release_pipeline_trigger


@click.command(name="create", help="Create a release from a version tag.")
@click.argument("tag")
@click.option("--commit", "-c", required=True, help="Commit SHA the tag points to.", metavar="SHA")
@click.option("--run-gates", is_flag=True, default=False, help="Run the tier's gates right away.")
@click.pass_context
def create_command(ctx: click.Context, tag: str, commit: str, run_gates: bool) -> None:
    run_command(ctx, "create", {"tag": tag, "commit": commit, "run_gates": run_gates})


@click.command(name="status", help="Show one release, or every release.")
@click.argument("tag", required=False)
@click.pass_context
def status_command(ctx: click.Context, tag: str | None) -> None:
    run_command(ctx, "status", {"tag": tag})


@click.command(name="gates", help="Run the quality gates for a pending release.")
@click.argument("tag")
@click.pass_context
def gates_command(ctx: click.Context, tag: str) -> None:
    run_command(ctx, "gates", {"tag": tag})


@click.command(name="deploy", help="Deploy the preview environment.")
@click.argument("tag")
@click.pass_context
def deploy_command(ctx: click.Context, tag: str) -> None:
    run_command(ctx, "deploy", {"tag": tag})


@click.command(name="accept", help="Accept a release after QA review (qa/admin only).")
@click.argument("tag")
@click.pass_context
def accept_command(ctx: click.Context, tag: str) -> None:
    run_command(ctx, "accept", {"tag": tag})


@click.command(name="reject", help="Reject a release (qa/admin only).")
@click.argument("tag")
@click.option("--reason", "-r", default="", help="Why the release is rejected (required).")
@click.pass_context
def reject_command(ctx: click.Context, tag: str, reason: str) -> None:
    run_command(ctx, "reject", {"tag": tag, "reason": reason})


@click.command(name="retry", help="Re-run the gates that failed.")
@click.argument("tag")
@click.pass_context
def retry_command(ctx: click.Context, tag: str) -> None:
    run_command(ctx, "retry", {"tag": tag})


@click.command(name="promote", help="Promote an accepted RC to its production tag.")
@click.argument("tag")
@click.pass_context
def promote_command(ctx: click.Context, tag: str) -> None:
    run_command(ctx, "promote", {"tag": tag})


@click.command(name="list", help="List releases, newest version first.")
@click.pass_context
def list_command(ctx: click.Context) -> None:
    run_command(ctx, "list", {})


@click.command(name="history", help="Show the release audit trail.")
@click.argument("tag", required=False)
@click.pass_context
def history_command(ctx: click.Context, tag: str | None) -> None:
    run_command(ctx, "history", {"tag": tag})


@click.command(
    name="webhook", help="Start the release pipeline from a GitHub or GitLab tag push payload."
)
@click.argument("source", type=click.Choice(["github", "gitlab"]))
@click.argument("payload", type=click.File("r"), default="-")
@click.pass_context
def webhook_command(ctx: click.Context, source: str, payload: IO[str]) -> None:
    settings: CliSettings = ctx.obj
    try:
        data = json.load(payload)
    except json.JSONDecodeError as e:
        error_exit(f"Webhook payload is not valid JSON: {e}", exit_code=ExitCode.FORMAT_ERROR)

    # The pusher named in the payload is recorded as the acting user
    context = build_context(settings)
    handler = TagPushHandler(release_pipeline_trigger(context.manager))
    try:
        result = handler.handle_tag_event(source, data)
    except ReleaseError as e:
        error_exit(str(e), exit_code=e.exit_code)

    if settings.output == "json":
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    elif result.triggered:
        success(f"Release pipeline started for {result.tag}")
    else:
        success(f"Ignored tag push: {result.reason}")


RELEASE_COMMANDS = [
    create_command,
    status_command,
    gates_command,
    deploy_command,
    accept_command,
    reject_command,
    retry_command,
    promote_command,
    list_command,
    history_command,
    webhook_command,
]

__all__ = ["RELEASE_COMMANDS"]
