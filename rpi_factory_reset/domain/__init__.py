"""Domain models for factory reset operations."""

from __future__ import annotations

from .models import (
    DispatchMode,
    EngineKind,
    Partition,
    PartitionRole,
    ResetState,
    ResetStatus,
    RestoreResult,
    StorageDevice,
)


__all__ = [
    "DispatchMode",
    "EngineKind",
    "Partition",
    "PartitionRole",
    "ResetState",
    "ResetStatus",
    "RestoreResult",
    "StorageDevice",
]
