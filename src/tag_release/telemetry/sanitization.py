"""Strip credentials from error messages before they leave the process.

Used for span status messages and for UpstreamError text returned at the
command boundary, where gate command output or webhook URLs may carry tokens.
"""

from __future__ import annotations

import re

_SENSITIVE_KEY_PATTERN = re.compile(
    r"(password|secret|token|api_key|apikey|authorization|credential)"
    r"\s*[=:]\s*\S+",
    re.IGNORECASE,
)
_URL_CREDENTIAL_PATTERN = re.compile(r"://[^@/\s]+:[^@/\s]+@")
# Slack-style webhook paths embed the secret in the URL itself
_WEBHOOK_PATH_PATTERN = re.compile(r"(https?://hooks\.[^/\s]+/services)/\S+")


def _redact_pair(match: re.Match[str]) -> str:
    text = match.group(0)
    if "=" in text:
        return text.split("=", 1)[0] + "=<REDACTED>"
    return text.split(":", 1)[0] + ": <REDACTED>"


def sanitize_error_message(msg: str, max_length: int = 500) -> str:
    """Redact credentials in ``msg`` and truncate it to ``max_length``.

    Example:
        >>> sanitize_error_message("push failed: token=abc123")
        'push failed: token=<REDACTED>'
    """
    sanitized = _URL_CREDENTIAL_PATTERN.sub("://<REDACTED>@", msg)
    sanitized = _WEBHOOK_PATH_PATTERN.sub(r"\1/<REDACTED>", sanitized)
    sanitized = _SENSITIVE_KEY_PATTERN.sub(_redact_pair, sanitized)
    return sanitized[:max_length]


__all__ = ["sanitize_error_message"]
