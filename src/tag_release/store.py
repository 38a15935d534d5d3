"""Release snapshot persistence.

The manager keeps one current snapshot per tag. Stores are not required to be
thread-safe: the manager only touches a tag's snapshot while holding that
tag's lock.

Key Components:
    ReleaseStore: Protocol for snapshot storage
    InMemoryReleaseStore: Process-local dict
    JsonReleaseStore: One ``<tag>.json`` file per release, written atomically
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import ValidationError

from tag_release.errors import TagFormatError, UpstreamError
from tag_release.schemas.release import Release
from tag_release.tags import is_valid_tag

logger = structlog.get_logger(__name__)


@runtime_checkable
class ReleaseStore(Protocol):
    """Persistence for current release snapshots."""

    def get(self, tag: str) -> Release | None:
        """Current snapshot for ``tag``, or None."""
        ...

    def save(self, release: Release) -> None:
        """Store ``release`` as the current snapshot for its tag."""
        ...

    def list(self) -> list[Release]:
        """Every stored release, in no particular order."""
        ...

    def discard(self, tag: str) -> None:
        """Remove a snapshot whose creation could not be audited."""
        ...


class InMemoryReleaseStore:
    """Release store backed by a dict."""

    def __init__(self) -> None:
        self._releases: dict[str, Release] = {}

    def get(self, tag: str) -> Release | None:
        return self._releases.get(tag)

    def save(self, release: Release) -> None:
        self._releases[release.tag] = release

    def list(self) -> list[Release]:
        return list(self._releases.values())

    def discard(self, tag: str) -> None:
        self._releases.pop(tag, None)


class JsonReleaseStore:
    """Release store writing one JSON file per tag.

    Files are written to a temporary file in the same directory and moved
    into place with os.replace(), so readers never see a partial snapshot.
    Tags are validated before they are turned into paths.

    Example:
        >>> store = JsonReleaseStore(Path(".tlc/releases"))
        >>> store.save(release)  # .tlc/releases/v1.0.0-rc.1.json
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, tag: str) -> Path:
        # Tags become file names
        if not is_valid_tag(tag):
            raise TagFormatError(tag)
        return self._directory / f"{tag}.json"

    def _load(self, path: Path) -> Release:
        try:
            return Release.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error("release_snapshot_unreadable", path=str(path), error=str(e))
            raise UpstreamError("release_store", f"cannot read {path}: {e}") from e

    def get(self, tag: str) -> Release | None:
        path = self._path(tag)
        if not path.exists():
            return None
        return self._load(path)

    def save(self, release: Release) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        target = self._path(release.tag)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".tmp", dir=str(self._directory)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(release.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def list(self) -> list[Release]:
        if not self._directory.exists():
            return []
        return [self._load(path) for path in sorted(self._directory.glob("*.json"))]

    def discard(self, tag: str) -> None:
        self._path(tag).unlink(missing_ok=True)


__all__ = ["InMemoryReleaseStore", "JsonReleaseStore", "ReleaseStore"]
