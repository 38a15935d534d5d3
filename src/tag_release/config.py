"""Tier policy resolution for the release pipeline.

Loads the ``release`` section of a configuration document, merges user
overrides onto the built-in tier defaults, validates the result and answers
policy lookups (gates per tier, preview URL).

Merge Rules:
    - Tiers that are not mentioned keep their defaults.
    - A mentioned tier is merged field by field: a supplied ``gates`` list
      replaces the default list, every scalar is overridden independently.
    - Top-level scalars (tagPattern, previewUrlTemplate) replace defaults.
    - The input document is never mutated.

Example:
    >>> from tag_release.config import load_release_config, get_gates_for_tier
    >>> config = load_release_config({"release": {"tiers": {"rc": {"coverageThreshold": 90}}}})
    >>> [g.value for g in get_gates_for_tier(config, "rc")]
    ['tests', 'security', 'coverage', 'qa-approval']
    >>> config.tiers["rc"].coverage_threshold
    90
"""

from __future__ import annotations

import copy
import fnmatch
import re
import string
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from tag_release.errors import ConfigurationError
from tag_release.schemas.config import (
    NOTIFICATION_EVENTS,
    ConfigValidationResult,
    DeploymentStrategy,
    ReleaseConfig,
    TierPolicy,
)
from tag_release.schemas.release import VALID_GATE_NAMES, GateName

logger = structlog.get_logger(__name__)

RELEASE_SECTION = "release"

# snake_case spellings accepted in configuration documents
_KEY_ALIASES: dict[str, str] = {
    "tag_pattern": "tagPattern",
    "preview_url_template": "previewUrlTemplate",
    "gate_commands": "gateCommands",
    "coverage_threshold": "coverageThreshold",
    "auto_deploy": "autoDeploy",
    "requires_approval": "requiresApproval",
    "requires_2fa": "requires2FA",
    "deployment_strategy": "deploymentStrategy",
    "on_deploy": "onDeploy",
    "on_accept": "onAccept",
    "on_reject": "onReject",
    "on_promote": "onPromote",
    "on_gates_failed": "onGatesFailed",
}

_TOP_LEVEL_KEYS = frozenset(
    {"tagPattern", "previewUrlTemplate", "tiers", "notifications", "gateCommands", "webhooks"}
)
_TIER_KEYS = frozenset(
    {
        "tier",
        "gates",
        "coverageThreshold",
        "autoDeploy",
        "requiresApproval",
        "requires2FA",
        "deploymentStrategy",
    }
)
_TIER_BOOL_KEYS = ("autoDeploy", "requiresApproval", "requires2FA")
_TEMPLATE_FIELDS = frozenset({"tag", "domain"})
_VALID_STRATEGIES = frozenset(s.value for s in DeploymentStrategy)

_RELEASE_GATES = ["tests", "security", "coverage"]

DEFAULT_TIER_POLICIES: dict[str, dict[str, Any]] = {
    "feature": {
        "gates": ["tests"],
        "coverageThreshold": 0,
        "autoDeploy": True,
        "requiresApproval": False,
        "requires2FA": False,
        "deploymentStrategy": "recreate",
    },
    "dev": {
        "gates": ["tests"],
        "coverageThreshold": 60,
        "autoDeploy": True,
        "requiresApproval": False,
        "requires2FA": False,
        "deploymentStrategy": "rolling",
    },
    "beta": {
        "gates": ["tests", "security"],
        "coverageThreshold": 70,
        "autoDeploy": True,
        "requiresApproval": False,
        "requires2FA": False,
        "deploymentStrategy": "canary",
    },
    "rc": {
        "gates": ["tests", "security", "coverage", "qa-approval"],
        "coverageThreshold": 80,
        "autoDeploy": True,
        "requiresApproval": True,
        "requires2FA": False,
        "deploymentStrategy": "blue-green",
    },
    "release": {
        "gates": _RELEASE_GATES,
        "coverageThreshold": 90,
        "autoDeploy": False,
        "requiresApproval": True,
        "requires2FA": True,
        "deploymentStrategy": "blue-green",
    },
    "stable": {
        "gates": _RELEASE_GATES,
        "coverageThreshold": 90,
        "autoDeploy": False,
        "requiresApproval": True,
        "requires2FA": True,
        "deploymentStrategy": "blue-green",
    },
}

DEFAULT_RELEASE_CONFIG: dict[str, Any] = {
    "tagPattern": "v*",
    "previewUrlTemplate": "qa-{tag}.{domain}",
    "tiers": DEFAULT_TIER_POLICIES,
    "notifications": {},
    "gateCommands": {},
    "webhooks": {},
}


def _normalize_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    return {_KEY_ALIASES.get(k, k): v for k, v in data.items()}


def _extract_section(raw: Any) -> dict[str, Any]:
    """Return a deep copy of the ``release`` section, or {} when absent."""
    if not isinstance(raw, Mapping):
        return {}
    section = raw.get(RELEASE_SECTION)
    if not isinstance(section, Mapping):
        return {}
    return _normalize_keys(copy.deepcopy(dict(section)))


def _merge_tier(name: str, override: Any) -> Any:
    base = copy.deepcopy(DEFAULT_TIER_POLICIES.get(name, {}))
    if not isinstance(override, Mapping):
        # Left for validate_release_config() to report
        return override
    for key, value in _normalize_keys(override).items():
        base[key] = copy.deepcopy(value)
    base["tier"] = name
    return base


def merge_release_config(raw: Any) -> dict[str, Any]:
    """Merge the ``release`` section of ``raw`` onto the defaults.

    Args:
        raw: Full configuration document (``{"release": {...}, ...}``), or None.

    Returns:
        Merged mapping in camelCase form. Not validated.
    """
    section = _extract_section(raw)
    merged = copy.deepcopy(DEFAULT_RELEASE_CONFIG)
    for name, policy in merged["tiers"].items():
        policy["tier"] = name

    for key, value in section.items():
        if key == "tiers" and isinstance(value, Mapping):
            for name, override in value.items():
                merged["tiers"][name] = _merge_tier(str(name), override)
        elif key == "notifications" and isinstance(value, Mapping):
            merged["notifications"] = _normalize_keys(value)
        else:
            merged[key] = value
    return merged


def _validate_tag_pattern(value: Any, errors: list[str]) -> None:
    if not isinstance(value, str) or not value.strip():
        errors.append("tagPattern must be a non-empty glob pattern")
        return
    if any(ch.isspace() for ch in value):
        errors.append(f"tagPattern must not contain whitespace: {value!r}")
        return
    try:
        re.compile(fnmatch.translate(value))
    except re.error as e:
        errors.append(f"tagPattern is not a valid glob pattern: {value!r} ({e})")


def _validate_template(value: Any, errors: list[str]) -> None:
    if not isinstance(value, str) or not value:
        errors.append("previewUrlTemplate must be a non-empty string containing {tag}")
        return
    try:
        fields = {f for _, f, _, _ in string.Formatter().parse(value) if f is not None}
    except ValueError as e:
        errors.append(f"previewUrlTemplate is malformed: {e}")
        return
    if "tag" not in fields:
        errors.append(f"previewUrlTemplate must contain a {{tag}} placeholder: {value!r}")
    unknown = fields - _TEMPLATE_FIELDS
    if unknown:
        errors.append(
            f"previewUrlTemplate has unknown placeholders: {sorted(unknown)}. "
            f"Valid placeholders: {sorted(_TEMPLATE_FIELDS)}"
        )


def _validate_tier(name: str, policy: Any, errors: list[str]) -> None:
    if not isinstance(policy, Mapping):
        errors.append(f"tiers.{name} must be a mapping")
        return

    unknown = set(policy) - _TIER_KEYS
    if unknown:
        errors.append(f"tiers.{name} has unknown keys: {sorted(unknown)}")

    gates = policy.get("gates", [])
    if not isinstance(gates, (list, tuple)):
        errors.append(f"tiers.{name}.gates must be a list of gate names")
    else:
        for gate in gates:
            if gate not in VALID_GATE_NAMES:
                errors.append(
                    f"tiers.{name}.gates contains unknown gate '{gate}'. "
                    f"Valid gates: {sorted(VALID_GATE_NAMES)}"
                )
        if len(set(map(str, gates))) != len(gates):
            errors.append(f"tiers.{name}.gates contains duplicates")

    threshold = policy.get("coverageThreshold", 80)
    if isinstance(threshold, bool) or not isinstance(threshold, int) or not 0 <= threshold <= 100:
        errors.append(f"tiers.{name}.coverageThreshold must be an integer between 0 and 100")

    for key in _TIER_BOOL_KEYS:
        if key in policy and not isinstance(policy[key], bool):
            errors.append(f"tiers.{name}.{key} must be a boolean")

    strategy = policy.get("deploymentStrategy", DeploymentStrategy.ROLLING.value)
    if strategy not in _VALID_STRATEGIES:
        errors.append(
            f"tiers.{name}.deploymentStrategy '{strategy}' is invalid. "
            f"Valid strategies: {sorted(_VALID_STRATEGIES)}"
        )


def _validate_notifications(value: Any, errors: list[str]) -> None:
    if not isinstance(value, Mapping):
        errors.append("notifications must be a mapping of event to channel names")
        return
    for event, channels in value.items():
        if event not in NOTIFICATION_EVENTS:
            errors.append(
                f"Unknown notification event '{event}'. "
                f"Valid events: {sorted(NOTIFICATION_EVENTS)}"
            )
            continue
        if not isinstance(channels, (list, tuple)):
            errors.append(f"notification channels for {event} must be a list")
            continue
        for channel in channels:
            if not isinstance(channel, str) or not channel.strip():
                errors.append(
                    f"Invalid notification channel for {event}: {channel!r} "
                    "(channel names must be non-empty strings)"
                )


def _validate_gate_commands(value: Any, errors: list[str]) -> None:
    if not isinstance(value, Mapping):
        errors.append("gateCommands must be a mapping of gate name to command")
        return
    for gate, command in value.items():
        if gate not in VALID_GATE_NAMES:
            errors.append(f"gateCommands contains unknown gate '{gate}'")
        if not isinstance(command, str) or not command.strip():
            errors.append(f"gateCommands.{gate} must be a non-empty command string")


def _validate_webhooks(value: Any, errors: list[str]) -> None:
    if not isinstance(value, Mapping):
        errors.append("webhooks must be a mapping of channel name to URL")
        return
    for channel, url in value.items():
        if not isinstance(channel, str) or not channel.strip():
            errors.append(f"webhooks has an invalid channel name: {channel!r}")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            errors.append(f"webhooks.{channel} must be an http(s) URL")


def validate_release_config(config: Mapping[str, Any] | ReleaseConfig) -> ConfigValidationResult:
    """Validate a merged release configuration.

    Args:
        config: Output of merge_release_config(), or an existing ReleaseConfig.

    Returns:
        ConfigValidationResult listing every problem found.
    """
    if isinstance(config, ReleaseConfig):
        data: Mapping[str, Any] = config.model_dump(by_alias=True, mode="json")
    else:
        data = config

    errors: list[str] = []

    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        errors.append(f"release config has unknown keys: {sorted(unknown)}")

    _validate_tag_pattern(data.get("tagPattern"), errors)
    _validate_template(data.get("previewUrlTemplate"), errors)

    tiers = data.get("tiers", {})
    if not isinstance(tiers, Mapping):
        errors.append("tiers must be a mapping of tier name to policy")
    else:
        for name, policy in tiers.items():
            _validate_tier(str(name), policy, errors)

    _validate_notifications(data.get("notifications", {}), errors)
    _validate_gate_commands(data.get("gateCommands", {}), errors)
    _validate_webhooks(data.get("webhooks", {}), errors)

    return ConfigValidationResult(valid=not errors, errors=errors)


def load_release_config(raw: Any = None) -> ReleaseConfig:
    """Merge, validate and freeze a release configuration.

    Args:
        raw: Full configuration document, or None for defaults.

    Returns:
        Frozen ReleaseConfig.

    Raises:
        ConfigurationError: If validation fails.
    """
    merged = merge_release_config(raw)
    result = validate_release_config(merged)
    if not result.valid:
        logger.warning("release_config_invalid", errors=result.errors)
        raise ConfigurationError(result.errors)

    try:
        config = ReleaseConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(
            [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
        ) from e

    logger.debug(
        "release_config_loaded",
        tag_pattern=config.tag_pattern,
        tiers=sorted(config.tiers),
    )
    return config


def load_release_config_file(path: Path) -> ReleaseConfig:
    """Load a release configuration from a YAML or JSON file.

    A missing file yields the default configuration.

    Raises:
        ConfigurationError: If the file cannot be parsed or fails validation.
    """
    if not path.exists():
        logger.info("release_config_defaults", path=str(path))
        return load_release_config(None)

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError([f"Failed to parse {path}: {e}"]) from e

    if data is not None and not isinstance(data, Mapping):
        raise ConfigurationError([f"{path} must contain a mapping at the top level"])
    return load_release_config(data)


def get_tier_policy(config: ReleaseConfig, tier: str) -> TierPolicy | None:
    """Policy for ``tier``, or None if the tier is not configured."""
    return config.tiers.get(tier)


def get_gates_for_tier(config: ReleaseConfig, tier: str) -> list[GateName]:
    """Gates required for ``tier``. An unknown tier yields an empty list."""
    policy = config.tiers.get(tier)
    if policy is None:
        return []
    return list(policy.gates)


def get_preview_url(config: ReleaseConfig, tag: str, domain: str) -> str:
    """Render the preview URL template for ``tag`` on ``domain``."""
    return config.preview_url_template.replace("{tag}", tag).replace("{domain}", domain)


__all__ = [
    "DEFAULT_RELEASE_CONFIG",
    "DEFAULT_TIER_POLICIES",
    "get_gates_for_tier",
    "get_preview_url",
    "get_tier_policy",
    "load_release_config",
    "load_release_config_file",
    "merge_release_config",
    "validate_release_config",
]
