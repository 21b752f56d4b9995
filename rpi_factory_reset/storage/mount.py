"""Mounting helpers with validated subprocess arguments.

All external commands are run with argument lists; device paths must live
under /dev/ and may not contain shell metacharacters.

Functions:
    - mount_partition(): Mount a device node at a directory
    - unmount_partition(): Unmount a directory
    - bind_mount_read_only(): Read-only view of an already mounted tree
    - mounted(): Context manager mounting a partition at a temporary directory
    - is_mounted(): Whether a directory is an active mountpoint
"""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from rpi_factory_reset.logging import LoggerFactory

from .devices import get_mountpoints, is_mountpoint_active, is_read_only_mount
from .exceptions import MountError, UnmountFailedError


log = LoggerFactory.for_system()

_FORBIDDEN_CHARS = [";", "&", "|", "$", "`", "\n", "\r", " "]


def _validate_device_path(device: str) -> None:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid partition path: {device}")
    if any(char in device for char in _FORBIDDEN_CHARS):
        raise ValueError(f"Partition path contains invalid characters: {device}")


def is_mounted(mountpoint: str | os.PathLike) -> bool:
    return is_mountpoint_active(os.fspath(mountpoint))


def mount_partition(
    device: str,
    mountpoint: str | os.PathLike,
    read_only: bool = False,
    fs_type: Optional[str] = None,
) -> None:
    """Mount ``device`` at ``mountpoint``, creating the directory.

    Args:
        device: Device node (e.g., '/dev/mmcblk0p3')
        mountpoint: Target directory
        read_only: Mount with ``-o ro``
        fs_type: Optional filesystem type passed as ``-t``

    Raises:
        ValueError: If the device path is invalid
        MountError: If the mount command fails
    """
    _validate_device_path(device)
    target = Path(mountpoint)
    target.mkdir(parents=True, exist_ok=True)

    command = ["mount"]
    if fs_type:
        command.extend(["-t", fs_type])
    if read_only:
        command.extend(["-o", "ro"])
    command.extend([device, str(target)])

    log.debug(f"Mounting {device} at {target}{' (read-only)' if read_only else ''}")
    try:
        subprocess.run(command, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as e:
        raise MountError(
            f"Failed to mount {device} to {target}: {e.stderr.strip()}"
        ) from e


def unmount_partition(mountpoint: str | os.PathLike, lazy_fallback: bool = True) -> None:
    """Unmount ``mountpoint``, falling back to a lazy unmount.

    Raises:
        UnmountFailedError: If the directory is still mounted afterwards
    """
    path = os.fspath(mountpoint)
    if not is_mounted(path):
        return

    subprocess.run(["sync"], check=False, capture_output=True, text=True)
    try:
        subprocess.run(["umount", path], check=True, capture_output=True, text=True)
        log.debug(f"Unmounted {path}")
        return
    except subprocess.CalledProcessError as e:
        log.warning(f"Failed to unmount {path}: {e.stderr.strip()}")
        if not lazy_fallback:
            raise UnmountFailedError(path, [path]) from e

    try:
        subprocess.run(
            ["umount", "-l", path], check=True, capture_output=True, text=True
        )
        log.debug(f"Lazy unmounted {path}")
    except subprocess.CalledProcessError as e:
        raise UnmountFailedError(path, [path]) from e


def bind_mount_read_only(source: str | os.PathLike, mountpoint: str | os.PathLike) -> None:
    """Expose the mounted tree at ``source`` read-only at ``mountpoint``.

    A bind mount inherits the original mount's flags, so the read-only
    flag is applied with a second remount of the bind.

    Raises:
        MountError: If either mount command fails
    """
    source = os.fspath(source)
    target = os.fspath(mountpoint)
    log.debug(f"Bind mounting {source} read-only at {target}")
    try:
        subprocess.run(
            ["mount", "--bind", source, target], check=True, capture_output=True, text=True
        )
    except subprocess.CalledProcessError as e:
        raise MountError(f"Failed to bind mount {source} to {target}: {e.stderr.strip()}") from e
    try:
        subprocess.run(
            ["mount", "-o", "remount,ro,bind", target],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        unmount_partition(target)
        raise MountError(f"Failed to make {target} read-only: {e.stderr.strip()}") from e


def _release(target: Path) -> None:
    unmount_partition(target)
    try:
        target.rmdir()
    except OSError as error:
        log.warning(f"Could not remove mount directory {target}: {error}")


@contextmanager
def mounted(
    device: str,
    read_only: bool = False,
    prefix: str = "rpi-factory-reset-",
) -> Generator[Path, None, None]:
    """Mount ``device`` at a fresh temporary directory for the block's duration.

    If the device is already mounted somewhere, that mountpoint is yielded
    and left mounted on exit. When ``read_only`` is requested and the
    existing mount is writable, a read-only bind of it is yielded instead.

    Example:
        with mounted("/dev/mmcblk0p2", read_only=True) as backup_root:
            validate_backup_tree(backup_root)
    """
    existing = get_mountpoints(device)
    current = None
    if existing:
        current = "/" if "/" in existing else existing[0]
        if not read_only or is_read_only_mount(current):
            log.debug(f"{device} already mounted at {current}")
            yield Path(current)
            return

    target = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        if current is not None:
            bind_mount_read_only(current, target)
        else:
            mount_partition(device, target, read_only=read_only)
    except (MountError, ValueError):
        shutil.rmtree(target, ignore_errors=True)
        raise

    try:
        yield target
    finally:
        _release(target)
