"""Filesystem helpers for snapshot locations."""
from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_data_dir


APP_NAME = "CatalogMirror"
APP_AUTHOR = "CatalogMirror"
SNAPSHOT_FILENAME = "catalog_snapshot.db"


def default_snapshot_path() -> str:
    """Return the platform-appropriate default snapshot location."""

    base_dir = Path(user_data_dir(APP_NAME, APP_AUTHOR))
    return str(base_dir / "data" / SNAPSHOT_FILENAME)


def ensure_parent_directory(path: str | Path) -> Path:
    """Expand ``path`` and create its parent directory if needed."""

    resolved = Path(path).expanduser()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved.resolve()


def fsync_directory(path: Path) -> None:
    """Flush directory metadata so a completed rename survives a crash."""

    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass  # not supported on every platform
    finally:
        os.close(fd)
