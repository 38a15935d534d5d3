"""Release configuration schemas.

Typed, frozen models for the ``release`` section of the configuration
document. Field aliases match the camelCase keys used in configuration files;
snake_case names are accepted as well.

Key Components:
    DeploymentStrategy: How a tier is rolled out
    TierPolicy: Gates and approval requirements for one tier
    ReleaseConfig: Complete release configuration
    ConfigValidationResult: Outcome of validate_release_config()

Examples:
    >>> policy = TierPolicy(tier="rc", gates=["tests"], coverageThreshold=80)
    >>> policy.coverage_threshold
    80
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tag_release.schemas.release import GateName

NOTIFICATION_EVENTS = frozenset(
    {"onDeploy", "onAccept", "onReject", "onPromote", "onGatesFailed"}
)
"""Lifecycle events that may carry notification channels."""


class DeploymentStrategy(str, Enum):
    """Deployment strategy applied when a tier is rolled out."""

    ROLLING = "rolling"
    BLUE_GREEN = "blue-green"
    CANARY = "canary"
    RECREATE = "recreate"


class TierPolicy(BaseModel):
    """Policy applied to every release of one tier.

    Attributes:
        tier: Tier name (rc, beta, dev, feature, release, stable).
        gates: Gates that must pass, in dispatch order.
        coverage_threshold: Minimum coverage percentage for the coverage gate.
        auto_deploy: Deploy a preview as soon as gates pass.
        requires_approval: A QA decision is required before promotion.
        requires_2fa: Approvers must confirm with a second factor.
        deployment_strategy: Rollout strategy for this tier.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    tier: str = Field(..., min_length=1)
    gates: tuple[GateName, ...] = Field(default=())
    coverage_threshold: int = Field(default=80, ge=0, le=100, alias="coverageThreshold")
    auto_deploy: bool = Field(default=False, alias="autoDeploy")
    requires_approval: bool = Field(default=False, alias="requiresApproval")
    requires_2fa: bool = Field(default=False, alias="requires2FA")
    deployment_strategy: DeploymentStrategy = Field(
        default=DeploymentStrategy.ROLLING, alias="deploymentStrategy"
    )


class ReleaseConfig(BaseModel):
    """Complete, validated release configuration.

    Build instances with ``tag_release.config.load_release_config()`` so that
    user overrides are merged onto the tier defaults and validated first.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    tag_pattern: str = Field(default="v*", min_length=1, alias="tagPattern")
    preview_url_template: str = Field(
        default="qa-{tag}.{domain}", min_length=1, alias="previewUrlTemplate"
    )
    tiers: dict[str, TierPolicy] = Field(default_factory=dict)
    notifications: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    gate_commands: dict[GateName, str] = Field(default_factory=dict, alias="gateCommands")
    webhooks: dict[str, str] = Field(
        default_factory=dict,
        description="Notification channel name to webhook URL",
    )

    def channels_for(self, event: str) -> tuple[str, ...]:
        """Notification channels configured for a lifecycle event."""
        return self.notifications.get(event, ())


class ConfigValidationResult(BaseModel):
    """Result of validating a release configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    valid: bool
    errors: list[str] = Field(default_factory=list)


__all__ = [
    "ConfigValidationResult",
    "DeploymentStrategy",
    "NOTIFICATION_EVENTS",
    "ReleaseConfig",
    "TierPolicy",
]
