"""Crash-safe file primitives for the boot partition.

The boot partition is usually vfat, which has no hard links, so atomic
creation uses ``O_CREAT | O_EXCL`` and atomic rewrites use a temporary file
plus ``os.replace``. Every change is followed by an ``fsync`` of the file and
of its directory, so it survives a power cut once the call returns.
"""

from __future__ import annotations

import os
from pathlib import Path


TMP_SUFFIX = ".tmp"


def fsync_directory(path: str | os.PathLike) -> None:
    fd = os.open(path, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def create_exclusive(path: str | os.PathLike, data: bytes) -> None:
    """Create ``path`` with ``data``; raises FileExistsError if it exists."""
    path = Path(path)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    try:
        view = memoryview(data)
        while view:
            view = view[os.write(fd, view):]
        os.fsync(fd)
    finally:
        os.close(fd)
    fsync_directory(path.parent)


def atomic_write(path: str | os.PathLike, data: bytes) -> None:
    """Replace ``path`` with ``data``; readers see the old or the new file."""
    path = Path(path)
    tmp_path = path.with_name(path.name + TMP_SUFFIX)
    if tmp_path.exists():
        tmp_path.unlink()
    try:
        create_exclusive(tmp_path, data)
        os.replace(tmp_path, path)
    except OSError:
        if tmp_path.exists():
            tmp_path.unlink()
        raise
    fsync_directory(path.parent)


def durable_unlink(path: str | os.PathLike) -> bool:
    """Delete ``path`` and fsync its directory. Returns False if it was absent."""
    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    fsync_directory(path.parent)
    return True
