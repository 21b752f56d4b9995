"""Restore engine interface and factory.

An engine copies the Backup store onto the Active store. Which engine runs is
a deployment decision made once through :func:`get_engine`; callers never
branch on the engine type themselves.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from rpi_factory_reset.domain.models import EngineKind, RestoreResult


class RestoreEngine(ABC):
    """Copy ``source`` onto ``destination``, all or nothing.

    A result with ``ok=False`` means the destination may be half-written.
    Engines never retry and never raise for I/O problems during the copy;
    those are reported in the result with the offending path or offset.
    """

    kind: EngineKind

    @abstractmethod
    def restore(
        self,
        source: str | os.PathLike,
        destination: str | os.PathLike,
        exclude: Iterable[str] = (),
    ) -> RestoreResult:
        """Run one restore.

        Args:
            source: Backup root directory or device node
            destination: Active root directory or device node
            exclude: Absolute paths, relative to the destination root, that
                are neither copied nor deleted
        """


def normalize_excludes(exclude: Iterable[str]) -> frozenset[str]:
    """Turn ``/proc``, ``tmp/`` and similar into root-relative ``proc``, ``tmp``."""
    normalized = set()
    for path in exclude:
        path = os.path.normpath("/" + str(path).strip()).lstrip("/")
        if path and path != ".":
            normalized.add(path)
    return frozenset(normalized)


def get_engine(
    kind: EngineKind,
    backend: Optional[str] = None,
    **options,
) -> RestoreEngine:
    """Build the engine for a deployment.

    Args:
        kind: Tree sync (file level) or block copy (raw device)
        backend: For tree sync, ``"python"`` or ``"rsync"``; defaults to the
            ``tree_sync_backend`` setting
        **options: Passed to the engine constructor

    Raises:
        ValueError: Unknown backend
    """
    if kind is EngineKind.BLOCK_COPY:
        from .block_copy import BlockCopyEngine

        return BlockCopyEngine(**options)

    if backend is None:
        from rpi_factory_reset.config import settings

        backend = settings.get_setting("tree_sync_backend", "python")
    if backend == "rsync":
        from .rsync import RsyncTreeSyncEngine

        return RsyncTreeSyncEngine(**options)
    if backend == "python":
        from .tree_sync import TreeSyncEngine

        return TreeSyncEngine(**options)
    raise ValueError(f"Unknown tree sync backend: {backend}")
