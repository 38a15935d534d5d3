"""tag-release: Release gating pipeline for version tags.

This package provides:
- Tag classification: parse, validate, tier and order version tags
- Tier policy: gates, coverage thresholds and approval rules per tier
- ReleaseManager: state machine from pending through gates, preview and QA
  review to promotion
- AuditLedger: hash-chained, tamper-evident record of every transition with
  JSON, CSV, CEF and Splunk exports
- execute_tag_command: caller boundary with role checks and exit codes
- TagPushHandler: GitHub and GitLab tag push webhooks that start the pipeline

Example:
    >>> from tag_release import ReleaseManager, CallableGateRunner, load_release_config
    >>> config = load_release_config()
    >>> runner = CallableGateRunner({"tests": lambda r: True, "security": lambda r: True})
    >>> manager = ReleaseManager(config, runner)
    >>> manager.start_release("v1.0.0-beta.1", "abc123")
    >>> manager.run_gates("v1.0.0-beta.1").passed
    True

See Also:
    - tag_release.cli: Command-line interface
    - tag_release.telemetry: Tracing and structured logging
"""

from __future__ import annotations

__version__ = "0.1.0"

from tag_release.audit import AuditLedger, InMemoryLedgerStorage, JsonlLedgerStorage
from tag_release.authorization import AuthorizationChecker, Caller, ReleaseAction
from tag_release.commands import CommandContext, CommandResult, execute_tag_command
from tag_release.config import (
    get_gates_for_tier,
    get_preview_url,
    load_release_config,
    load_release_config_file,
    validate_release_config,
)
from tag_release.errors import (
    AuthorizationError,
    ConfigurationError,
    FormatError,
    IntegrityError,
    NotFoundError,
    ReasonRequiredError,
    ReleaseError,
    StateError,
    TagFormatError,
    UpstreamError,
)
from tag_release.gates import CallableGateRunner, CommandGateRunner, GateRunner
from tag_release.manager import ReleaseManager
from tag_release.notifier import ReleaseNotifier, WebhookSender
from tag_release.schemas import (
    AuditEntry,
    GateName,
    GateResult,
    GateRunResult,
    GateStatus,
    ParsedTag,
    Release,
    ReleaseConfig,
    ReleaseState,
    TierPolicy,
)
from tag_release.store import InMemoryReleaseStore, JsonReleaseStore
from tag_release.tag_push import (
    TagPushEvent,
    TagPushHandler,
    TagPushResult,
    release_pipeline_trigger,
)
from tag_release.tags import compare_versions, get_tier, is_valid_tag, parse_tag, sort_tags

__all__ = [
    "__version__",
    # Audit
    "AuditEntry",
    "AuditLedger",
    "InMemoryLedgerStorage",
    "JsonlLedgerStorage",
    # Authorization and commands
    "AuthorizationChecker",
    "Caller",
    "CommandContext",
    "CommandResult",
    "ReleaseAction",
    "execute_tag_command",
    # Config
    "ReleaseConfig",
    "TierPolicy",
    "get_gates_for_tier",
    "get_preview_url",
    "load_release_config",
    "load_release_config_file",
    "validate_release_config",
    # Errors
    "AuthorizationError",
    "ConfigurationError",
    "FormatError",
    "IntegrityError",
    "NotFoundError",
    "ReasonRequiredError",
    "ReleaseError",
    "StateError",
    "TagFormatError",
    "UpstreamError",
    # Gates
    "CallableGateRunner",
    "CommandGateRunner",
    "GateName",
    "GateResult",
    "GateRunResult",
    "GateRunner",
    "GateStatus",
    # Releases
    "InMemoryReleaseStore",
    "JsonReleaseStore",
    "ParsedTag",
    "Release",
    "ReleaseManager",
    "ReleaseNotifier",
    "ReleaseState",
    "WebhookSender",
    # Tag push webhooks
    "TagPushEvent",
    "TagPushHandler",
    "TagPushResult",
    "release_pipeline_trigger",
    # Tags
    "compare_versions",
    "get_tier",
    "is_valid_tag",
    "parse_tag",
    "sort_tags",
]
