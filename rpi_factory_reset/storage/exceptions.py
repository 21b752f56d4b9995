"""Custom exceptions for storage and reset operations.

This module defines a hierarchy of exceptions so callers can tell a refusal
to start (validation) apart from a failure part-way through (restore I/O)
and from a boot configuration that can no longer be trusted.

Exception Hierarchy:
    StorageError (base)
        ├── DeviceError
        │   └── DeviceNotFoundError
        ├── ValidationError
        │   ├── PartitionNotFoundError
        │   ├── AmbiguousPartitionError
        │   ├── LabelMismatchError
        │   ├── BackupStructureError
        │   └── PartitionSizeMismatchError
        ├── MountError
        │   ├── UnmountFailedError
        │   └── MountVerificationError
        ├── ResetStateError
        │   ├── AlreadyScheduledError
        │   ├── NotScheduledError
        │   ├── ConfirmationDeclinedError
        │   └── RestoreInProgressError
        ├── RestoreIOError
        │   └── RestoreVerificationError
        └── ConfigurationCorruptError

Usage:
    from rpi_factory_reset.storage.exceptions import AlreadyScheduledError

    if intent_store.exists():
        raise AlreadyScheduledError(intent_store.path)
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage and reset operations."""


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class ValidationError(StorageError):
    """The partition layout does not allow a reset to proceed."""


class PartitionNotFoundError(ValidationError):
    """No partition carries the expected label."""

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"No partition with label '{label}' found")


class AmbiguousPartitionError(ValidationError):
    """More than one partition carries the same label."""

    def __init__(self, label: str, candidates: list[str]):
        self.label = label
        self.candidates = candidates
        super().__init__(
            f"Label '{label}' is ambiguous, found on: {', '.join(candidates)}"
        )


class LabelMismatchError(ValidationError):
    """Active and backup labels collide or point at incompatible partitions."""

    def __init__(self, active_label: str, backup_label: str, reason: str):
        self.active_label = active_label
        self.backup_label = backup_label
        self.reason = reason
        super().__init__(
            f"Label pair ({active_label}, {backup_label}) rejected: {reason}"
        )


class BackupStructureError(ValidationError):
    """Backup partition lacks the directories of a root filesystem."""

    def __init__(self, device: str, missing: list[str]):
        self.device = device
        self.missing = missing
        super().__init__(
            f"Backup {device} is not a root filesystem, missing: {', '.join(missing)}"
        )


class PartitionSizeMismatchError(ValidationError):
    """Block copy requires equal-sized source and destination."""

    def __init__(
        self,
        source_name: str,
        source_size: int,
        destination_name: str,
        destination_size: int,
    ):
        self.source_name = source_name
        self.source_size = source_size
        self.destination_name = destination_name
        self.destination_size = destination_size
        super().__init__(
            f"Source {source_name} ({source_size} bytes) and destination "
            f"{destination_name} ({destination_size} bytes) differ in size"
        )


class MountError(StorageError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount device or partition."""

    def __init__(self, device_name: str, mountpoints: list[str]):
        self.device_name = device_name
        self.mountpoints = mountpoints
        mounts_str = ", ".join(mountpoints)
        super().__init__(
            f"Failed to unmount {device_name}. " f"Active mountpoints: {mounts_str}"
        )


class MountVerificationError(MountError):
    """Device is mounted where it must not be."""

    def __init__(self, device_name: str, mountpoint: str):
        self.device_name = device_name
        self.mountpoint = mountpoint
        super().__init__(f"Device {device_name} is mounted at {mountpoint}")


class ResetStateError(StorageError):
    """Requested transition is not valid from the current reset state."""


class AlreadyScheduledError(ResetStateError):
    """A reset intent already exists; cancel it first."""

    def __init__(self, flag_path: str):
        self.flag_path = flag_path
        super().__init__(f"A factory reset is already scheduled ({flag_path})")


class NotScheduledError(ResetStateError):
    """There is no pending reset to cancel."""

    def __init__(self, flag_path: str):
        self.flag_path = flag_path
        super().__init__(f"No factory reset is scheduled ({flag_path} absent)")


class ConfirmationDeclinedError(ResetStateError):
    """The operator did not confirm the destructive reset."""

    def __init__(self):
        super().__init__("Factory reset not confirmed, nothing scheduled")


class RestoreInProgressError(ResetStateError):
    """A restore is already writing to a partition."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"A restore is running on {device_name}")


class RestoreIOError(StorageError):
    """Restore aborted part-way; the destination may be half-written."""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        offset: int | None = None,
    ):
        self.path = path
        self.offset = offset
        super().__init__(message)


class RestoreVerificationError(RestoreIOError):
    """Restore finished but the result failed post-restore checks."""


class ConfigurationCorruptError(StorageError):
    """Saved boot configuration is missing or unreadable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Boot configuration backup {path} unusable: {reason}")
