"""Release pipeline exception hierarchy.

All exceptions inherit from ReleaseError, the base exception class.

Exception Hierarchy:
    ReleaseError (base)
    ├── FormatError                # Malformed tag or configuration
    │   ├── TagFormatError         # Tag does not match the version grammar
    │   └── ConfigurationError     # Release configuration failed validation
    ├── NotFoundError              # Unknown release tag
    ├── StateError                 # Operation invalid for the current state
    │   └── ReasonRequiredError    # Rejection without a reason
    ├── AuthorizationError         # Role not permitted for the action
    ├── IntegrityError             # Audit ledger verification failed
    └── UpstreamError              # Gate runner, deployer or storage failure

Exit Codes:
    0 - Success
    1 - General error (ReleaseError)
    2 - Format error (FormatError and subclasses)
    3 - Release not found (NotFoundError)
    4 - Invalid state (StateError and subclasses)
    5 - Authorization denied (AuthorizationError)
    6 - Ledger integrity failure (IntegrityError)
    7 - Upstream failure (UpstreamError)

Example:
    >>> from tag_release.errors import NotFoundError
    >>> raise NotFoundError("v9.9.9")
    Traceback (most recent call last):
        ...
    NotFoundError: Release not found: v9.9.9
"""

from __future__ import annotations


class ReleaseError(Exception):
    """Base exception for all release pipeline errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class FormatError(ReleaseError):
    """Raised when a tag or configuration document is malformed."""

    exit_code: int = 2


class TagFormatError(FormatError):
    """Raised when a tag does not match ``v{major}.{minor}.{patch}[-{channel}.{n}]``.

    Attributes:
        tag: The offending tag value.
        reason: Why the tag was rejected.
    """

    def __init__(self, tag: object, reason: str | None = None) -> None:
        self.tag = tag
        self.reason = reason
        msg = (
            f"Invalid tag format: {tag!s}. Expected format: "
            "v{major}.{minor}.{patch}[-{channel}.{number}]"
        )
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class ConfigurationError(FormatError):
    """Raised when the release configuration fails validation.

    Attributes:
        errors: Every validation error that was found.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid release configuration: " + "; ".join(self.errors))


class NotFoundError(ReleaseError):
    """Raised when no release exists for a tag.

    Attributes:
        tag: The tag that was looked up.
    """

    exit_code: int = 3

    def __init__(self, tag: str) -> None:
        self.tag = tag
        super().__init__(f"Release not found: {tag}")


class StateError(ReleaseError):
    """Raised when an operation is not valid for the release's current state.

    Attributes:
        tag: The release tag.
        current_state: State the release was in.
        operation: Operation that was attempted.
    """

    exit_code: int = 4

    def __init__(
        self,
        tag: str,
        current_state: str | None,
        operation: str,
        detail: str | None = None,
    ) -> None:
        self.tag = tag
        self.current_state = current_state
        self.operation = operation
        msg = f"Cannot {operation} release {tag}"
        if current_state is not None:
            msg += f" in state '{current_state}'"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ReasonRequiredError(StateError):
    """Raised when a release is rejected without a reason."""

    def __init__(self, tag: str) -> None:
        super().__init__(
            tag,
            None,
            "reject",
            "Rejection requires a reason. Provide a reason text.",
        )


class AuthorizationError(ReleaseError):
    """Raised by the caller boundary when a role may not perform an action.

    Attributes:
        user: Name of the user that was denied.
        role: The user's role.
        action: The action that was attempted.
    """

    exit_code: int = 5

    def __init__(self, user: str, role: str, action: str, reason: str | None = None) -> None:
        self.user = user
        self.role = role
        self.action = action
        self.reason = reason
        msg = f"Unauthorized: role '{role}' cannot {action} releases"
        if reason:
            msg += f". {reason}"
        super().__init__(msg)


class IntegrityError(ReleaseError):
    """Raised when the audit ledger fails checksum-chain verification.

    Attributes:
        indexes: Ledger positions of the entries that failed verification.
    """

    exit_code: int = 6

    def __init__(self, indexes: list[int]) -> None:
        self.indexes = list(indexes)
        shown = ", ".join(str(i) for i in self.indexes[:10])
        if len(self.indexes) > 10:
            shown += f" (and {len(self.indexes) - 10} more)"
        super().__init__(f"Audit ledger integrity check failed at entries: {shown}")


class UpstreamError(ReleaseError):
    """Raised when a collaborator (gate runner, deployer, storage) fails.

    The underlying exception is chained as ``__cause__``.

    Attributes:
        component: Collaborator that failed (e.g. "gate_runner", "ledger_storage").
    """

    exit_code: int = 7

    def __init__(self, component: str, message: str) -> None:
        self.component = component
        super().__init__(f"{component} failed: {message}")


__all__ = [
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
]
