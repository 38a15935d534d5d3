"""Main entry point for the tag-release CLI.

Example:
    $ tag-release --help
    $ tag-release create v1.0.0-rc.1 --commit abc123 --run-gates
    $ tag-release --role qa accept v1.0.0-rc.1
    $ tag-release audit verify
"""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path

import click

from tag_release.cli.audit import audit
from tag_release.cli.release import RELEASE_COMMANDS
from tag_release.cli.utils import CliSettings, default_user
from tag_release.telemetry.logging import configure_logging


def _get_version() -> str:
    try:
        return get_version("tag-release")
    except PackageNotFoundError:
        return "unknown"


@click.group(
    name="tag-release",
    help="tag-release - Gate, review and promote version tags.",
    epilog="Use 'tag-release <command> --help' for command-specific help.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(
    version=_get_version(), prog_name="tag-release", message="%(prog)s %(version)s"
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("release.yaml"),
    show_default=True,
    envvar="TAG_RELEASE_CONFIG",
    help="Release configuration (YAML or JSON). Defaults apply if missing.",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path(".tlc"),
    show_default=True,
    help="Directory holding release snapshots and the audit ledger.",
)
@click.option("--user", default=None, help="Caller identity. Defaults to $USER.")
@click.option(
    "--role",
    default="developer",
    show_default=True,
    envvar="TAG_RELEASE_ROLE",
    help="Caller role (qa and admin may accept or reject).",
)
@click.option("--domain", default="localhost", show_default=True, help="Preview URL domain.")
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    show_default=True,
)
@click.option("--log-level", default="WARNING", show_default=True, help="Log level for stderr.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path,
    state_dir: Path,
    user: str | None,
    role: str,
    domain: str,
    output: str,
    log_level: str,
) -> None:
    """Root command group."""
    try:
        configure_logging(log_level=log_level, json_output=True)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--log-level") from e

    ctx.obj = CliSettings(
        config_path=config_path,
        state_dir=state_dir,
        user=user or default_user(),
        role=role,
        domain=domain,
        output=output,
    )


for _command in RELEASE_COMMANDS:
    cli.add_command(_command)
cli.add_command(audit)


def main(argv: list[str] | None = None) -> None:
    """Console script entry point."""
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
