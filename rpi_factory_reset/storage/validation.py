"""Safety validation functions for reset operations.

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, so a refusal carries its reason to the
caller. Validation always runs before anything is written.

Example:
    from rpi_factory_reset.storage.validation import validate_pair

    try:
        active, backup = validate_pair("writable", "writable_backup")
    except ValidationError as error:
        # Refuse to schedule
        ...
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Optional

from rpi_factory_reset.domain.models import Partition, PartitionRole

from .devices import get_mountpoints, get_root_device, list_partitions, resolve_role
from .exceptions import (
    BackupStructureError,
    LabelMismatchError,
    MountVerificationError,
    PartitionSizeMismatchError,
)


DEFAULT_REQUIRED_DIRS = ("etc", "usr", "var")


def validate_pair(
    active_label: str,
    backup_label: str,
    device: Optional[str] = None,
    partitions: Optional[Iterable[Partition]] = None,
) -> tuple[Partition, Partition]:
    """Resolve and cross-check the Active and Backup partitions.

    Args:
        active_label: Label of the live root filesystem
        backup_label: Label of the known-good replica
        device: Only consider partitions of this disk (external reset)
        partitions: Pre-fetched partition list (skips lsblk)

    Returns:
        Tuple of (active, backup) partitions with roles assigned

    Raises:
        LabelMismatchError: Labels collide or the filesystems differ
        PartitionNotFoundError: A label is absent
        AmbiguousPartitionError: A label is carried by several partitions
    """
    if active_label == backup_label:
        raise LabelMismatchError(active_label, backup_label, "labels are identical")

    if partitions is None:
        partitions = list_partitions(device)
    partitions = list(partitions)

    active = resolve_role(active_label, partitions).with_role(PartitionRole.ACTIVE)
    backup = resolve_role(backup_label, partitions).with_role(PartitionRole.BACKUP)

    if active.name == backup.name:
        raise LabelMismatchError(
            active_label, backup_label, f"both resolve to {active.name}"
        )
    if (
        active.filesystem_kind
        and backup.filesystem_kind
        and active.filesystem_kind != backup.filesystem_kind
    ):
        raise LabelMismatchError(
            active_label,
            backup_label,
            f"filesystem {active.filesystem_kind} != {backup.filesystem_kind}",
        )
    return active, backup


def validate_backup_tree(
    root: str | os.PathLike,
    required_dirs: Iterable[str] = DEFAULT_REQUIRED_DIRS,
    device: Optional[str] = None,
) -> None:
    """Check that a mounted backup looks like a root filesystem.

    Raises:
        BackupStructureError: If any required directory is missing
    """
    root_path = Path(root)
    missing = [name for name in required_dirs if not (root_path / name).is_dir()]
    if missing:
        raise BackupStructureError(device or str(root_path), missing)


def validate_block_pair(source: Partition, destination: Partition) -> None:
    """Check a block copy can start: equal sizes, destination not mounted.

    Raises:
        PartitionSizeMismatchError: If the sizes differ
        MountVerificationError: If the destination is mounted
    """
    if source.size_bytes != destination.size_bytes:
        raise PartitionSizeMismatchError(
            source.name,
            source.size_bytes,
            destination.name,
            destination.size_bytes,
        )
    validate_unmounted(destination)


def validate_unmounted(partition: Partition) -> None:
    """Raise MountVerificationError if the kernel reports the partition mounted."""
    mountpoints = get_mountpoints(partition.device_path)
    if mountpoints:
        raise MountVerificationError(partition.name, mountpoints[0])
    if partition.mountpoint:
        raise MountVerificationError(partition.name, partition.mountpoint)


def validate_not_running_root(partition: Partition) -> bool:
    """Whether ``partition`` is the root filesystem of this process.

    Returns:
        True if the partition is mounted at ``/``
    """
    if partition.mountpoint == "/":
        return True
    root_device = get_root_device()
    if root_device is None:
        return False
    return os.path.realpath(root_device) == os.path.realpath(partition.device_path)
