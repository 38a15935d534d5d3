"""Version tag classification.

Parses and validates release tags, derives the release tier and orders
versions for display.

Tag Format:
    v{major}.{minor}.{patch}[-{channel}.{number}]

    channel is one of: rc, beta, dev, feature. A tag without a prerelease
    segment belongs to the ``release`` tier.

Ordering:
    Versions compare by (major, minor, patch) first. For the same core
    version, prerelease channels rank feature < dev < beta < rc, and a tag
    without a prerelease segment ranks after all of them. Tags on the same
    channel compare by prerelease number.

Example:
    >>> from tag_release.tags import parse_tag, compare_versions
    >>> parse_tag("v1.0.0-rc.1").tier
    'rc'
    >>> compare_versions("v1.0.0", "v1.0.0-rc.2")
    1
"""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable

from tag_release.errors import TagFormatError
from tag_release.schemas.release import ParsedTag, Prerelease

# Prerelease channels in ascending precedence
CHANNEL_RANK: dict[str, int] = {
    "feature": 0,
    "dev": 1,
    "beta": 2,
    "rc": 3,
}
RELEASE_RANK = len(CHANNEL_RANK)

RELEASE_TIER = "release"
"""Tier of tags with no prerelease segment."""

TAG_PATTERN = re.compile(
    r"^v(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<channel>" + "|".join(CHANNEL_RANK) + r")\.(?P<number>0|[1-9]\d*))?$"
)

MAX_TAG_LENGTH = 128


def parse_tag(tag: str) -> ParsedTag:
    """Parse a version tag.

    Args:
        tag: Tag string, e.g. ``"v1.0.0-rc.1"``.

    Returns:
        ParsedTag with numeric components and optional prerelease.

    Raises:
        TagFormatError: If the tag does not match the version grammar.

    Examples:
        >>> parse_tag("v2.1.3-beta.4").prerelease.number
        4
        >>> parse_tag("1.0.0")
        Traceback (most recent call last):
            ...
        TagFormatError: Invalid tag format: 1.0.0. ...
    """
    if not isinstance(tag, str):
        raise TagFormatError(tag, "tag must be a string")
    if len(tag) > MAX_TAG_LENGTH:
        raise TagFormatError(tag[:MAX_TAG_LENGTH], f"longer than {MAX_TAG_LENGTH} characters")

    match = TAG_PATTERN.fullmatch(tag)
    if match is None:
        raise TagFormatError(tag)

    prerelease = None
    if match.group("channel") is not None:
        prerelease = Prerelease(
            channel=match.group("channel"),
            number=int(match.group("number")),
        )

    return ParsedTag(
        major=int(match.group("major")),
        minor=int(match.group("minor")),
        patch=int(match.group("patch")),
        prerelease=prerelease,
        raw=tag,
    )


def is_valid_tag(tag: object) -> bool:
    """Return True if ``tag`` parses. Never raises."""
    try:
        parse_tag(tag)  # type: ignore[arg-type]
    except TagFormatError:
        return False
    return True


def get_tier(tag: str) -> str:
    """Release tier of a tag (rc, beta, dev, feature or release)."""
    return parse_tag(tag).tier


def promoted_tag(tag: str) -> str:
    """Clean production tag for ``tag`` (``v1.0.0-rc.1`` -> ``v1.0.0``)."""
    return parse_tag(tag).base_version


def _precedence(parsed: ParsedTag) -> tuple[int, int, int, int, int]:
    if parsed.prerelease is None:
        return (parsed.major, parsed.minor, parsed.patch, RELEASE_RANK, 0)
    return (
        parsed.major,
        parsed.minor,
        parsed.patch,
        CHANNEL_RANK[parsed.prerelease.channel],
        parsed.prerelease.number,
    )


def compare_versions(a: str, b: str) -> int:
    """Compare two tags.

    Returns:
        -1 if ``a`` orders before ``b``, 1 if after, 0 if equal.

    Raises:
        TagFormatError: If either tag is invalid.

    Examples:
        >>> compare_versions("v1.0.0-rc.1", "v2.0.0-rc.1")
        -1
        >>> compare_versions("v1.0.0-rc.1", "v1.0.0-beta.9")
        1
    """
    left = _precedence(parse_tag(a))
    right = _precedence(parse_tag(b))
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def sort_tags(tags: Iterable[str], *, descending: bool = True) -> list[str]:
    """Sort tags by version precedence (newest first by default)."""
    return sorted(tags, key=functools.cmp_to_key(compare_versions), reverse=descending)


__all__ = [
    "CHANNEL_RANK",
    "RELEASE_TIER",
    "TAG_PATTERN",
    "compare_versions",
    "get_tier",
    "is_valid_tag",
    "parse_tag",
    "promoted_tag",
    "sort_tags",
]
