"""Unit tests for the command boundary."""

from __future__ import annotations

import json
from collections.abc import Callable

import pytest

from tag_release.authorization import Caller
from tag_release.commands import HANDLERS, SUBCOMMANDS, CommandContext, execute_tag_command
from tag_release.manager import ReleaseManager

TAG = "v1.0.0-rc.1"


def _context(manager: ReleaseManager, role: str = "developer", name: str = "dev") -> CommandContext:
    return CommandContext(manager=manager, caller=Caller(name=name, role=role))


@pytest.fixture
def dev(manager: ReleaseManager) -> CommandContext:
    return _context(manager)


@pytest.fixture
def qa(manager: ReleaseManager) -> CommandContext:
    return _context(manager, role="qa", name="qa-lead")


class TestDispatch:
    def test_every_subcommand_has_a_handler(self) -> None:
        assert set(HANDLERS) == set(SUBCOMMANDS)

    def test_unknown_subcommand(self, dev: CommandContext) -> None:
        result = execute_tag_command("deploy-all", {}, dev)
        assert result.success is False
        assert result.exit_code == 2
        assert result.message == (
            "Unknown subcommand: 'deploy-all'. Run 'help' for available subcommands."
        )

    def test_help_lists_subcommands(self, dev: CommandContext) -> None:
        result = execute_tag_command("help", None, dev)
        assert result.success
        assert {d["name"] for d in result.data} == {a.value for a in SUBCOMMANDS}


class TestLifecycleCommands:
    def test_create(self, dev: CommandContext) -> None:
        result = execute_tag_command("create", {"tag": TAG, "commit": "abc123"}, dev)
        assert result.success
        assert result.exit_code == 0
        assert result.message == f"Release {TAG} created successfully"
        assert result.data["state"] == "pending"

    def test_create_and_run_gates(self, dev: CommandContext) -> None:
        result = execute_tag_command(
            "create", {"tag": TAG, "commit": "abc123", "run_gates": True}, dev
        )
        assert result.success
        assert result.message.endswith("gates passed")
        assert result.data["state"] == "gates-passed"

    def test_create_requires_commit(self, dev: CommandContext) -> None:
        result = execute_tag_command("create", {"tag": TAG}, dev)
        assert not result.success
        assert result.exit_code == 2

    def test_create_invalid_tag(self, dev: CommandContext) -> None:
        result = execute_tag_command("create", {"tag": "1.0", "commit": "abc"}, dev)
        assert result.exit_code == 2
        assert "Invalid tag format" in result.message

    def test_status_not_found(self, dev: CommandContext) -> None:
        result = execute_tag_command("status", {"tag": TAG}, dev)
        assert result.exit_code == 3
        assert result.message == f"Release not found: {TAG}"

    def test_status_all(self, dev: CommandContext) -> None:
        execute_tag_command("create", {"tag": TAG, "commit": "abc"}, dev)
        result = execute_tag_command("status", {}, dev)
        assert result.success
        assert f"{TAG}: pending" in result.message

    def test_full_flow(self, dev: CommandContext, qa: CommandContext) -> None:
        assert execute_tag_command("create", {"tag": TAG, "commit": "abc"}, dev).success
        gates = execute_tag_command("gates", {"tag": TAG}, dev)
        assert gates.message == f"Gates passed for {TAG}"
        deploy = execute_tag_command("deploy", {"tag": TAG}, dev)
        assert deploy.data["preview_url"] == "qa-v1.0.0-rc.1.localhost"
        accept = execute_tag_command("accept", {"tag": TAG}, qa)
        assert accept.message == f"Release {TAG} accepted by qa-lead"
        promote = execute_tag_command("promote", {"tag": TAG}, dev)
        assert promote.message == f"Release {TAG} promoted to v1.0.0"

        history = execute_tag_command("history", {"tag": TAG}, dev)
        assert [e["event"] for e in history.data] == [
            "created",
            "gates-passed",
            "deployed",
            "accepted",
            "promoted",
        ]

    def test_state_error_exit_code(self, dev: CommandContext) -> None:
        execute_tag_command("create", {"tag": TAG, "commit": "abc"}, dev)
        result = execute_tag_command("promote", {"tag": TAG}, dev)
        assert result.exit_code == 4

    def test_reject_without_reason(self, qa: CommandContext, dev: CommandContext) -> None:
        execute_tag_command("create", {"tag": TAG, "commit": "abc", "run_gates": True}, dev)
        result = execute_tag_command("reject", {"tag": TAG, "reason": " "}, qa)
        assert result.exit_code == 4
        assert "requires a reason" in result.message

    def test_retry_message(self, make_manager: Callable[..., ReleaseManager]) -> None:
        context = _context(make_manager(failing=("tests",)))
        execute_tag_command("create", {"tag": TAG, "commit": "abc", "run_gates": True}, context)
        result = execute_tag_command("retry", {"tag": TAG}, context)
        assert result.success
        assert result.message == f"Some gates still failing for {TAG}"

    def test_list_empty(self, dev: CommandContext) -> None:
        result = execute_tag_command("list", {}, dev)
        assert result.message == "No releases found."
        assert result.data == []


class TestAuthorization:
    """Developer role is denied at every decision step."""

    @pytest.fixture
    def passed(self, dev: CommandContext) -> CommandContext:
        execute_tag_command("create", {"tag": TAG, "commit": "abc", "run_gates": True}, dev)
        return dev

    @pytest.mark.parametrize(
        ("subcommand", "args"),
        [("accept", {"tag": TAG}), ("reject", {"tag": TAG, "reason": "no"})],
    )
    def test_developer_denied(
        self, passed: CommandContext, subcommand: str, args: dict[str, str]
    ) -> None:
        result = execute_tag_command(subcommand, args, passed)
        assert result.success is False
        assert result.exit_code == 5
        assert result.message == (
            f"Unauthorized: role 'developer' cannot {subcommand} releases. "
            "Requires admin or qa role."
        )
        release = passed.manager.get_release(TAG)
        assert release is not None
        assert release.state.value == "gates-passed"

    def test_denial_is_audited(self, passed: CommandContext) -> None:
        execute_tag_command("accept", {"tag": TAG}, passed)
        entry = passed.manager.ledger.get_latest_event(TAG)
        assert entry is not None
        assert entry.event == "denied"
        assert entry.user == "dev"
        assert entry.metadata["action"] == "accept"
        assert entry.metadata["role"] == "developer"

    def test_admin_allowed(self, passed: CommandContext) -> None:
        admin = _context(passed.manager, role="admin", name="root")
        assert execute_tag_command("accept", {"tag": TAG}, admin).success


class TestAuditCommands:
    def test_verify_intact(self, dev: CommandContext) -> None:
        execute_tag_command("create", {"tag": TAG, "commit": "abc"}, dev)
        result = execute_tag_command("verify", {}, dev)
        assert result.success
        assert result.data["valid"] is True
        assert result.data["entries_checked"] == 1

    def test_verify_tampered(self, dev: CommandContext, ledger_storage) -> None:
        execute_tag_command("create", {"tag": TAG, "commit": "abc"}, dev)
        entries = ledger_storage._entries
        entries[0] = entries[0].model_copy(update={"user": "mallory"})

        result = execute_tag_command("verify", {}, dev)
        assert result.success is False
        assert result.exit_code == 6
        assert "entries: 0" in result.message

    def test_export_formats(self, dev: CommandContext) -> None:
        execute_tag_command("create", {"tag": TAG, "commit": "abc"}, dev)
        exported = execute_tag_command("export", {"format": "json"}, dev)
        assert json.loads(exported.data)["totalEntries"] == 1
        cef = execute_tag_command("export", {"format": "cef", "tag": TAG}, dev)
        assert cef.data.startswith("CEF:0|TLC|ReleaseAudit|1.0|created|")

    def test_export_time_filter(self, dev: CommandContext) -> None:
        execute_tag_command("create", {"tag": TAG, "commit": "abc"}, dev)
        result = execute_tag_command("export", {"format": "json", "from": "2999-01-01"}, dev)
        assert json.loads(result.data)["totalEntries"] == 0

    def test_export_bad_time(self, dev: CommandContext) -> None:
        result = execute_tag_command("export", {"from": "yesterday"}, dev)
        assert result.exit_code == 2

    def test_export_unsupported(self, dev: CommandContext) -> None:
        result = execute_tag_command("export", {"format": "xml"}, dev)
        assert result.exit_code == 2
        assert result.message.startswith("Unsupported export format: xml")
