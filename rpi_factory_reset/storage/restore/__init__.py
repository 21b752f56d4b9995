"""Restore engines: tree sync (Python or rsync) and block copy."""

from .base import RestoreEngine, get_engine, normalize_excludes
from .block_copy import BlockCopyEngine
from .rsync import RsyncTreeSyncEngine
from .tree_sync import TreeSyncEngine


__all__ = [
    "BlockCopyEngine",
    "RestoreEngine",
    "RsyncTreeSyncEngine",
    "TreeSyncEngine",
    "get_engine",
    "normalize_excludes",
]
