"""Role-based authorization for release actions.

The manager is role-agnostic; callers consult AuthorizationChecker before
invoking it. Access rules live in one table mapping each action to the roles
allowed to perform it (None means any role).

Example:
    >>> checker = AuthorizationChecker()
    >>> checker.check(ReleaseAction.ACCEPT, Caller(name="dev", role="developer")).authorized
    False
    >>> checker.check(ReleaseAction.ACCEPT, Caller(name="qa-lead", role="qa")).authorized
    True
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from tag_release.errors import AuthorizationError

logger = structlog.get_logger(__name__)

REVIEWER_ROLES: frozenset[str] = frozenset({"qa", "admin"})
"""Roles allowed to accept or reject a release."""


class ReleaseAction(str, Enum):
    """Actions a caller can request."""

    CREATE = "create"
    STATUS = "status"
    GATES = "gates"
    DEPLOY = "deploy"
    ACCEPT = "accept"
    REJECT = "reject"
    PROMOTE = "promote"
    RETRY = "retry"
    LIST = "list"
    HISTORY = "history"
    VERIFY = "verify"
    EXPORT = "export"
    HELP = "help"


ACTION_ROLES: Mapping[ReleaseAction, frozenset[str] | None] = {
    ReleaseAction.CREATE: None,
    ReleaseAction.STATUS: None,
    ReleaseAction.GATES: None,
    ReleaseAction.DEPLOY: None,
    ReleaseAction.ACCEPT: REVIEWER_ROLES,
    ReleaseAction.REJECT: REVIEWER_ROLES,
    ReleaseAction.PROMOTE: None,
    ReleaseAction.RETRY: None,
    ReleaseAction.LIST: None,
    ReleaseAction.HISTORY: None,
    ReleaseAction.VERIFY: None,
    ReleaseAction.EXPORT: None,
    ReleaseAction.HELP: None,
}


class Caller(BaseModel):
    """Identity of whoever invokes a command."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    role: str = Field(default="developer")


class AuthorizationResult(BaseModel):
    """Outcome of one authorization check.

    Attributes:
        authorized: Whether the action is allowed.
        action: Action that was checked.
        user: Name of the caller.
        role: Role of the caller.
        reason: Why the action was denied.
        checked_at: When the check ran.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    authorized: bool
    action: ReleaseAction
    user: str
    role: str
    reason: str | None = Field(default=None)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _format_roles(roles: frozenset[str]) -> str:
    return " or ".join(sorted(roles))


class AuthorizationChecker:
    """Evaluates the action/role table.

    Args:
        rules: Overrides for the default table. Actions missing from ``rules``
            fall back to ACTION_ROLES.
    """

    def __init__(self, rules: Mapping[ReleaseAction, frozenset[str] | None] | None = None) -> None:
        self._rules = {**ACTION_ROLES, **(rules or {})}

    def allowed_roles(self, action: ReleaseAction) -> frozenset[str] | None:
        return self._rules.get(action)

    def check(self, action: ReleaseAction, caller: Caller) -> AuthorizationResult:
        """Decide whether ``caller`` may perform ``action``."""
        log = logger.bind(action=action.value, user=caller.name, role=caller.role)
        roles = self._rules.get(action)

        if roles is None or caller.role in roles:
            log.debug("authorization_allowed")
            return AuthorizationResult(
                authorized=True,
                action=action,
                user=caller.name,
                role=caller.role,
            )

        reason = f"Requires {_format_roles(roles)} role."
        log.warning("authorization_denied", reason=reason)
        return AuthorizationResult(
            authorized=False,
            action=action,
            user=caller.name,
            role=caller.role,
            reason=reason,
        )

    def require(self, action: ReleaseAction, caller: Caller) -> AuthorizationResult:
        """Like check(), but raise when the action is denied.

        Raises:
            AuthorizationError: If the caller's role is not allowed.
        """
        result = self.check(action, caller)
        if not result.authorized:
            raise AuthorizationError(caller.name, caller.role, action.value, result.reason)
        return result


__all__ = [
    "ACTION_ROLES",
    "AuthorizationChecker",
    "AuthorizationResult",
    "Caller",
    "REVIEWER_ROLES",
    "ReleaseAction",
]
