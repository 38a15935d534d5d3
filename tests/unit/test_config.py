"""Unit tests for release configuration merging, validation and lookups."""

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from tag_release.config import (
    DEFAULT_TIER_POLICIES,
    get_gates_for_tier,
    get_preview_url,
    get_tier_policy,
    load_release_config,
    load_release_config_file,
    merge_release_config,
    validate_release_config,
)
from tag_release.errors import ConfigurationError
from tag_release.schemas.config import DeploymentStrategy
from tag_release.schemas.release import GateName


class TestDefaults:
    """The built-in tier table."""

    def test_default_tiers(self) -> None:
        config = load_release_config()
        assert set(config.tiers) == {"feature", "dev", "beta", "rc", "release", "stable"}
        assert config.tag_pattern == "v*"
        assert config.preview_url_template == "qa-{tag}.{domain}"

    def test_rc_policy(self) -> None:
        policy = load_release_config().tiers["rc"]
        assert [g.value for g in policy.gates] == ["tests", "security", "coverage", "qa-approval"]
        assert policy.coverage_threshold == 80
        assert policy.auto_deploy is True
        assert policy.requires_approval is True
        assert policy.deployment_strategy == DeploymentStrategy.BLUE_GREEN

    def test_release_requires_2fa(self) -> None:
        policy = load_release_config().tiers["release"]
        assert policy.requires_2fa is True
        assert policy.auto_deploy is False

    def test_no_config_section_yields_defaults(self) -> None:
        assert load_release_config({"other": 1}) == load_release_config(None)


class TestMerge:
    """Tests for merge_release_config()."""

    def test_scalar_override_keeps_default_gates(self) -> None:
        config = load_release_config({"release": {"tiers": {"rc": {"coverageThreshold": 95}}}})
        assert config.tiers["rc"].coverage_threshold == 95
        assert get_gates_for_tier(config, "rc") == [
            GateName.TESTS,
            GateName.SECURITY,
            GateName.COVERAGE,
            GateName.QA_APPROVAL,
        ]

    def test_gates_list_replaces_default(self) -> None:
        config = load_release_config({"release": {"tiers": {"rc": {"gates": ["tests"]}}}})
        assert get_gates_for_tier(config, "rc") == [GateName.TESTS]

    def test_unmentioned_tiers_keep_defaults(self) -> None:
        config = load_release_config({"release": {"tiers": {"rc": {"autoDeploy": False}}}})
        assert config.tiers["beta"].coverage_threshold == 70

    def test_new_tier_can_be_added(self) -> None:
        config = load_release_config(
            {"release": {"tiers": {"hotfix": {"gates": ["tests", "security"]}}}}
        )
        assert get_gates_for_tier(config, "hotfix") == [GateName.TESTS, GateName.SECURITY]

    def test_snake_case_keys_accepted(self) -> None:
        config = load_release_config(
            {
                "release": {
                    "tag_pattern": "v1.*",
                    "tiers": {"beta": {"coverage_threshold": 50, "auto_deploy": False}},
                    "notifications": {"on_deploy": ["#qa"]},
                }
            }
        )
        assert config.tag_pattern == "v1.*"
        assert config.tiers["beta"].coverage_threshold == 50
        assert config.channels_for("onDeploy") == ("#qa",)

    def test_input_is_not_mutated(self) -> None:
        raw = {"release": {"tiers": {"rc": {"gates": ["tests"]}}}}
        snapshot = copy.deepcopy(raw)
        merge_release_config(raw)
        assert raw == snapshot

    def test_defaults_are_not_mutated(self) -> None:
        snapshot = copy.deepcopy(DEFAULT_TIER_POLICIES)
        load_release_config({"release": {"tiers": {"rc": {"gates": ["tests"]}}}})
        assert snapshot == DEFAULT_TIER_POLICIES


class TestValidation:
    """Tests for validate_release_config()."""

    def _errors(self, section: dict) -> list[str]:
        return validate_release_config(merge_release_config({"release": section})).errors

    def test_defaults_are_valid(self) -> None:
        result = validate_release_config(merge_release_config(None))
        assert result.valid is True
        assert result.errors == []

    def test_accepts_frozen_config(self) -> None:
        assert validate_release_config(load_release_config()).valid is True

    def test_unknown_gate(self) -> None:
        errors = self._errors({"tiers": {"rc": {"gates": ["tests", "lint"]}}})
        assert any("unknown gate 'lint'" in e for e in errors)

    def test_duplicate_gates(self) -> None:
        errors = self._errors({"tiers": {"rc": {"gates": ["tests", "tests"]}}})
        assert any("duplicates" in e for e in errors)

    @pytest.mark.parametrize("threshold", [-1, 101, "80", True, 80.5])
    def test_coverage_threshold_range(self, threshold: object) -> None:
        errors = self._errors({"tiers": {"rc": {"coverageThreshold": threshold}}})
        assert any("coverageThreshold" in e for e in errors)

    @pytest.mark.parametrize("threshold", [0, 100])
    def test_coverage_threshold_bounds_inclusive(self, threshold: int) -> None:
        assert self._errors({"tiers": {"rc": {"coverageThreshold": threshold}}}) == []

    def test_non_boolean_flag(self) -> None:
        errors = self._errors({"tiers": {"rc": {"autoDeploy": "yes"}}})
        assert "tiers.rc.autoDeploy must be a boolean" in errors

    def test_unknown_strategy(self) -> None:
        errors = self._errors({"tiers": {"rc": {"deploymentStrategy": "yolo"}}})
        assert any("deploymentStrategy 'yolo'" in e for e in errors)

    def test_unknown_tier_key(self) -> None:
        errors = self._errors({"tiers": {"rc": {"gatez": ["tests"]}}})
        assert any("unknown keys" in e for e in errors)

    def test_template_requires_tag_placeholder(self) -> None:
        errors = self._errors({"previewUrlTemplate": "qa.{domain}"})
        assert any("{tag}" in e for e in errors)

    def test_template_unknown_placeholder(self) -> None:
        errors = self._errors({"previewUrlTemplate": "qa-{tag}.{region}"})
        assert any("unknown placeholders" in e for e in errors)

    def test_template_malformed(self) -> None:
        errors = self._errors({"previewUrlTemplate": "qa-{tag"})
        assert any("malformed" in e for e in errors)

    def test_blank_tag_pattern(self) -> None:
        errors = self._errors({"tagPattern": "  "})
        assert any("tagPattern" in e for e in errors)

    def test_unknown_notification_event(self) -> None:
        errors = self._errors({"notifications": {"onExplode": ["#qa"]}})
        assert any("Unknown notification event 'onExplode'" in e for e in errors)

    def test_blank_notification_channel(self) -> None:
        errors = self._errors({"notifications": {"onDeploy": ["#qa", ""]}})
        assert any("Invalid notification channel" in e for e in errors)

    def test_gate_commands_must_name_known_gates(self) -> None:
        errors = self._errors({"gateCommands": {"lint": "ruff ."}})
        assert any("unknown gate 'lint'" in e for e in errors)

    def test_webhook_must_be_http(self) -> None:
        errors = self._errors({"webhooks": {"#qa": "ftp://example.com"}})
        assert "webhooks.#qa must be an http(s) URL" in errors

    def test_unknown_top_level_key(self) -> None:
        errors = self._errors({"tagPatern": "v*"})
        assert any("unknown keys" in e for e in errors)

    def test_collects_every_error(self) -> None:
        errors = self._errors(
            {
                "previewUrlTemplate": "static",
                "tiers": {"rc": {"gates": ["lint"], "coverageThreshold": 500}},
            }
        )
        assert len(errors) >= 3

    def test_load_raises_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            load_release_config({"release": {"tiers": {"rc": {"gates": ["lint"]}}}})
        assert exc_info.value.exit_code == 2
        assert any("lint" in e for e in exc_info.value.errors)


class TestLoadFile:
    """Tests for load_release_config_file()."""

    def test_missing_file_yields_defaults(self, tmp_path: Path) -> None:
        config = load_release_config_file(tmp_path / "absent.yaml")
        assert config == load_release_config()

    def test_yaml_file(self, tmp_path: Path) -> None:
        path = tmp_path / "release.yaml"
        path.write_text(
            "release:\n"
            "  previewUrlTemplate: 'preview-{tag}.{domain}'\n"
            "  tiers:\n"
            "    beta:\n"
            "      gates: [tests]\n"
            "  gateCommands:\n"
            "    tests: 'pytest -q'\n"
        )
        config = load_release_config_file(path)
        assert config.preview_url_template == "preview-{tag}.{domain}"
        assert get_gates_for_tier(config, "beta") == [GateName.TESTS]
        assert config.gate_commands[GateName.TESTS] == "pytest -q"

    def test_empty_file_yields_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "release.yaml"
        path.write_text("")
        assert load_release_config_file(path) == load_release_config()

    def test_unparseable_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "release.yaml"
        path.write_text("release: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            load_release_config_file(path)

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "release.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_release_config_file(path)


class TestLookups:
    def test_unknown_tier_has_no_gates(self) -> None:
        config = load_release_config()
        assert get_gates_for_tier(config, "nightly") == []
        assert get_tier_policy(config, "nightly") is None

    def test_preview_url(self) -> None:
        config = load_release_config()
        assert get_preview_url(config, "v1.0.0-rc.1", "example.com") == "qa-v1.0.0-rc.1.example.com"

    def test_preview_url_custom_template(self) -> None:
        config = load_release_config(
            {"release": {"previewUrlTemplate": "https://{domain}/preview/{tag}"}}
        )
        url = get_preview_url(config, "v2.0.0", "qa.internal")
        assert url == "https://qa.internal/preview/v2.0.0"
