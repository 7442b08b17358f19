"""Inspection and clearing of persistent component state volumes."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

_MIB = 1024 * 1024


def _volumes_root(data_dir) -> Path:
    return Path(data_dir) / "state" / "components"


def dir_stats(path) -> tuple[int, int]:
    """Number of regular files and their total size in bytes, recursively."""
    files = 0
    total = 0
    try:
        entries = list(os.scandir(path))
    except OSError:
        return 0, 0
    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                sub_files, sub_bytes = dir_stats(entry.path)
                files += sub_files
                total += sub_bytes
            elif entry.is_file(follow_symlinks=False):
                files += 1
                total += entry.stat(follow_symlinks=False).st_size
        except OSError:
            continue
    return files, total


def list_volumes(data_dir) -> list[dict[str, Any]]:
    """Every volume directory with its path, size in whole MiB and file count."""
    root = _volumes_root(data_dir)
    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)
    except OSError:
        return []
    volumes = []
    for entry in entries:
        try:
            if not entry.is_dir(follow_symlinks=False):
                continue
        except OSError:
            continue
        files, size = dir_stats(entry.path)
        volumes.append(
            {"name": entry.name, "path": entry.path, "size_mb": size // _MIB, "files": files}
        )
    return volumes


def clear_volume(data_dir, name: str) -> None:
    """Remove everything inside a volume, keeping the volume directory itself."""
    if not name.strip():
        raise ValueError("missing name")
    path = _volumes_root(data_dir) / name
    if not path.exists():
        raise FileNotFoundError("not found")
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()