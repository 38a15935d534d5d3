"""Command-line interface for the release pipeline."""

from __future__ import annotations

from tag_release.cli.main import cli, main

__all__ = ["cli", "main"]
