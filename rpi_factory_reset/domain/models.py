"""Domain model for factory reset operations.

Partitions are identified by filesystem label, never by index. The raw lsblk
dicts are converted into these objects at the storage boundary so the reset
state machine only ever sees typed values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ==============================================================================
# Device Domain
# ==============================================================================


class PartitionRole(Enum):
    """Function of a partition in the reset layout."""

    BOOT = "boot"
    ACTIVE = "active"
    BACKUP = "backup"
    RECOVERY = "recovery"


@dataclass(frozen=True)
class Partition:
    """A labelled partition detected by lsblk."""

    name: str  # e.g., "mmcblk0p3"
    label: str | None
    filesystem_kind: str | None  # e.g., "ext4", "vfat"
    size_bytes: int = 0
    mountpoint: str | None = None
    parent: str | None = None  # e.g., "mmcblk0"
    role: PartitionRole | None = None

    @property
    def device_path(self) -> str:
        """Device node path (e.g., /dev/mmcblk0p3)."""
        return f"/dev/{self.name}"

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoint)

    def format_label(self) -> str:
        """Human-readable label, e.g. "mmcblk0p3 (writable, ext4)"."""
        details = [part for part in (self.label, self.filesystem_kind) if part]
        if details:
            return f"{self.name} ({', '.join(details)})"
        return self.name

    def with_role(self, role: PartitionRole | None) -> Partition:
        return Partition(
            name=self.name,
            label=self.label,
            filesystem_kind=self.filesystem_kind,
            size_bytes=self.size_bytes,
            mountpoint=self.mountpoint,
            parent=self.parent,
            role=role,
        )

    @classmethod
    def from_lsblk_dict(
        cls, part: dict[str, Any], parent: str | None = None
    ) -> Partition:
        """Convert an lsblk partition dict to a Partition.

        Raises:
            KeyError: If the name key is missing
            ValueError: If size cannot be converted to int
        """
        label = part.get("label")
        if label is not None:
            label = str(label).strip() or None
        fstype = part.get("fstype")
        if fstype is not None:
            fstype = str(fstype).strip().lower() or None
        return cls(
            name=part["name"],
            label=label,
            filesystem_kind=fstype,
            size_bytes=int(part.get("size") or 0),
            mountpoint=part.get("mountpoint") or None,
            parent=parent,
        )


@dataclass(frozen=True)
class StorageDevice:
    """A disk and its partitions. Exists only while attached."""

    name: str
    size_bytes: int
    partitions: tuple[Partition, ...] = ()

    @property
    def device_path(self) -> str:
        return f"/dev/{self.name}"

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> StorageDevice:
        name = device["name"]
        partitions = tuple(
            Partition.from_lsblk_dict(child, parent=name)
            for child in device.get("children", []) or []
            if child.get("type") == "part"
        )
        return cls(
            name=name,
            size_bytes=int(device.get("size") or 0),
            partitions=partitions,
        )


# ==============================================================================
# Reset State Domain
# ==============================================================================


class ResetState(Enum):
    """Persisted reset state. The flag file on the boot partition is the store."""

    IDLE = "idle"
    SCHEDULED = "scheduled"


class DispatchMode(Enum):
    """How a pending reset is honoured on the next boot."""

    INBAND = "inband"  # early-boot unit on the active root, tree sync
    RECOVERY = "recovery"  # boot the recovery partition, block copy

    @classmethod
    def parse(cls, value: str | None) -> DispatchMode | None:
        """Parse a settings value; "auto" and unknown values return None."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class ResetStatus:
    """Answer to a status query."""

    state: ResetState
    mode: DispatchMode | None = None
    scheduled_at: str | None = None
    boot_config_modified: bool = False
    restoring: str | None = None

    @property
    def is_scheduled(self) -> bool:
        return self.state is ResetState.SCHEDULED

    def describe(self) -> list[str]:
        if not self.is_scheduled:
            lines = ["Factory reset: IDLE"]
            if self.restoring:
                lines.append(f"Restore running on {self.restoring}")
            return lines
        lines = ["Factory reset: SCHEDULED for next boot"]
        if self.mode is not None:
            lines.append(f"Mode: {self.mode.value}")
        if self.scheduled_at:
            lines.append(f"Scheduled at: {self.scheduled_at}")
        if self.boot_config_modified:
            lines.append("Boot configuration points at the recovery partition")
        if self.restoring:
            lines.append(f"Restore running on {self.restoring}")
        return lines


# ==============================================================================
# Restore Domain
# ==============================================================================


class EngineKind(Enum):
    """Restore engine variant."""

    TREE_SYNC = "tree-sync"
    BLOCK_COPY = "block-copy"


@dataclass
class RestoreResult:
    """Outcome of one restore run.

    A result is either a success or a partial failure. Partial failure means
    the destination may hold a mix of old and new data; callers must not
    treat it as restored.
    """

    ok: bool
    engine: EngineKind
    reason: str | None = None
    path: str | None = None
    offset: int | None = None
    bytes_copied: int = 0
    entries_copied: int = 0
    entries_deleted: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    duration_seconds: float = 0.0

    @classmethod
    def success(cls, engine: EngineKind, **kwargs) -> RestoreResult:
        return cls(ok=True, engine=engine, **kwargs)

    @classmethod
    def partial_failure(
        cls,
        engine: EngineKind,
        reason: str,
        *,
        path: str | None = None,
        offset: int | None = None,
        **kwargs,
    ) -> RestoreResult:
        return cls(
            ok=False, engine=engine, reason=reason, path=path, offset=offset, **kwargs
        )

    def describe_failure(self) -> str:
        if self.ok:
            return ""
        location = ""
        if self.path:
            location = f" at {self.path}"
        if self.offset is not None:
            location = f"{location} offset {self.offset}"
        return f"{self.reason}{location}"
