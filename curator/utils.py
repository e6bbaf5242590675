"""Utility functions for Curator."""

from __future__ import annotations

import time
from pathlib import Path


def short_path(path: Path) -> str:
    """Return abbreviated path showing only parent folder + filename.

    Example: /very/long/path/to/covers/123.jpg -> covers/123.jpg
    """
    return f"{path.parent.name}/{path.name}"


def epoch_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)
