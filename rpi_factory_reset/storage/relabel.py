"""Filesystem label and UUID repair after a block copy.

A block copy duplicates everything in the backup filesystem, including its
label and UUID. Afterwards two partitions answer to the backup label, and
``resolve_role`` would refuse to run. The Active partition is therefore
relabelled and given a fresh UUID straight after the copy.
"""

from __future__ import annotations

import subprocess

from rpi_factory_reset.domain.models import Partition
from rpi_factory_reset.logging import LoggerFactory

from .devices import invalidate_cache, run_command
from .exceptions import RestoreIOError


log = LoggerFactory.for_system()

EXT_FILESYSTEMS = {"ext2", "ext3", "ext4"}
FAT_FILESYSTEMS = {"vfat", "fat", "fat16", "fat32"}

# e2fsck exit codes below 4 mean "no errors" or "errors corrected"
E2FSCK_MAX_OK_CODE = 3


def _label_command(filesystem_kind: str, device_path: str, label: str) -> list[str]:
    if filesystem_kind in EXT_FILESYSTEMS:
        return ["e2label", device_path, label]
    if filesystem_kind in FAT_FILESYSTEMS:
        return ["fatlabel", device_path, label]
    raise RestoreIOError(
        f"Cannot relabel {device_path}: unsupported filesystem {filesystem_kind}",
        path=device_path,
    )


def relabel_partition(partition: Partition, label: str) -> None:
    """Write ``label`` to the filesystem on ``partition``.

    Raises:
        RestoreIOError: If the filesystem is unsupported or the tool fails
    """
    command = _label_command(
        partition.filesystem_kind or "", partition.device_path, label
    )
    try:
        run_command(command)
    except (subprocess.CalledProcessError, OSError) as error:
        raise RestoreIOError(
            f"Failed to relabel {partition.device_path} as {label}: {error}",
            path=partition.device_path,
        ) from error
    finally:
        invalidate_cache()
    log.info(f"Relabelled {partition.device_path} as '{label}'")


def regenerate_uuid(partition: Partition) -> bool:
    """Give an ext filesystem a random UUID.

    Returns:
        True if a new UUID was written, False if the filesystem kind does not
        support it (the label alone then distinguishes the partitions)

    Raises:
        RestoreIOError: If e2fsck reports uncorrected errors or tune2fs fails
    """
    if partition.filesystem_kind not in EXT_FILESYSTEMS:
        log.debug(
            f"Skipping UUID regeneration for {partition.device_path} "
            f"({partition.filesystem_kind})"
        )
        return False

    # tune2fs refuses -U on filesystems that have not been checked recently
    fsck = run_command(["e2fsck", "-f", "-p", partition.device_path], check=False)
    if fsck.returncode > E2FSCK_MAX_OK_CODE:
        raise RestoreIOError(
            f"e2fsck failed on {partition.device_path} (exit {fsck.returncode})",
            path=partition.device_path,
        )
    try:
        run_command(["tune2fs", "-U", "random", partition.device_path])
    except (subprocess.CalledProcessError, OSError) as error:
        raise RestoreIOError(
            f"Failed to regenerate UUID on {partition.device_path}: {error}",
            path=partition.device_path,
        ) from error
    finally:
        invalidate_cache()
    log.info(f"Regenerated filesystem UUID on {partition.device_path}")
    return True
