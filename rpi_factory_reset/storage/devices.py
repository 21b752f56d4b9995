"""Partition discovery and role resolution using lsblk.

Block devices are enumerated with ``lsblk -J -b`` and flattened into
:class:`~rpi_factory_reset.domain.models.Partition` objects. Roles are always
resolved by filesystem label: the partition index that carries a label is
allowed to change between system generations, the label itself is not.

Device Detection:
    lsblk JSON output gives, per block device:
    - Device name (e.g., mmcblk0, sda)
    - Size in bytes
    - Mountpoint (if any)
    - Filesystem type and label
    - Child partitions

    The output is cached for a short time so that a validation pass that
    resolves several labels only runs lsblk once.

Example:
    >>> from rpi_factory_reset.storage.devices import resolve_role
    >>> active = resolve_role("writable")
    >>> active.device_path
    '/dev/mmcblk0p2'
"""

from __future__ import annotations

import json
import os
import subprocess
import time
from typing import Iterable, Optional

import psutil

from rpi_factory_reset.config import settings
from rpi_factory_reset.domain.models import Partition, PartitionRole, StorageDevice
from rpi_factory_reset.logging import LoggerFactory

from .exceptions import (
    AmbiguousPartitionError,
    DeviceNotFoundError,
    PartitionNotFoundError,
)


log = LoggerFactory.for_device()

LSBLK_CACHE_TTL_SECONDS = 1.0
LSBLK_COLUMNS = "NAME,TYPE,SIZE,MOUNTPOINT,FSTYPE,LABEL,UUID"

_last_lsblk_names: Optional[tuple[str, ...]] = None
_lsblk_cache: Optional[list[dict]] = None
_lsblk_cache_time: Optional[float] = None


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def invalidate_cache() -> None:
    """Drop cached lsblk output, e.g. after relabelling a partition."""
    global _lsblk_cache, _lsblk_cache_time
    _lsblk_cache = None
    _lsblk_cache_time = None


def get_block_devices(force_refresh: bool = False):
    """Return block device data from lsblk with a short-lived cache.

    When lsblk fails or returns invalid JSON, the previous cache remains intact
    and is returned if available; otherwise an empty list is returned. When
    force_refresh=True, errors return an empty list so callers do not receive
    stale data.
    """
    global _last_lsblk_names, _lsblk_cache, _lsblk_cache_time
    now = time.monotonic()
    if (
        not force_refresh
        and _lsblk_cache is not None
        and _lsblk_cache_time is not None
        and now - _lsblk_cache_time <= LSBLK_CACHE_TTL_SECONDS
    ):
        return _lsblk_cache
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS],
            log_output=False,
            log_command=False,
        )
        data = json.loads(result.stdout)
        devices = data.get("blockdevices", [])
        device_names = tuple(
            device.get("name") for device in devices if device.get("name")
        )
        if device_names != _last_lsblk_names:
            if device_names:
                log.debug(
                    f"lsblk found {len(device_names)} devices: {', '.join(device_names)}"
                )
            else:
                log.debug("lsblk found no block devices")
            _last_lsblk_names = device_names
        _lsblk_cache = devices
        _lsblk_cache_time = now
        return devices
    except (subprocess.CalledProcessError, json.JSONDecodeError, OSError) as error:
        log.warning(f"lsblk failed: {error}")
        if _lsblk_cache is not None and not force_refresh:
            return _lsblk_cache
        return []


def _strip_dev(name: str) -> str:
    if name.startswith("/dev/"):
        return name[len("/dev/"):]
    return name


def get_device_by_name(name):
    if not name:
        return None
    name = _strip_dev(name)
    for device in get_block_devices():
        if device.get("name") == name:
            return device
    return None


def list_partitions(device: Optional[str] = None) -> list[Partition]:
    """Flatten lsblk output into partitions.

    Args:
        device: Restrict to one disk (``sdb`` or ``/dev/sdb``)

    Raises:
        DeviceNotFoundError: If ``device`` is given but not attached
    """
    if device is not None:
        device_dict = get_device_by_name(device)
        if not device_dict:
            raise DeviceNotFoundError(device)
        return list(StorageDevice.from_lsblk_dict(device_dict).partitions)

    partitions: list[Partition] = []
    for device_dict in get_block_devices():
        if device_dict.get("type") == "part":
            partitions.append(Partition.from_lsblk_dict(device_dict))
            continue
        partitions.extend(StorageDevice.from_lsblk_dict(device_dict).partitions)
    return partitions


def find_partitions_by_label(
    label: str, partitions: Optional[Iterable[Partition]] = None
) -> list[Partition]:
    if partitions is None:
        partitions = list_partitions()
    return [partition for partition in partitions if partition.label == label]


_ROLE_SETTINGS = {
    "active_label": PartitionRole.ACTIVE,
    "backup_label": PartitionRole.BACKUP,
    "recovery_label": PartitionRole.RECOVERY,
    "boot_label": PartitionRole.BOOT,
}


def _role_for_label(label: str) -> Optional[PartitionRole]:
    for key, role in _ROLE_SETTINGS.items():
        if settings.get_setting(key) == label:
            return role
    return None


def resolve_role(
    label: str, partitions: Optional[Iterable[Partition]] = None
) -> Partition:
    """Return the single partition carrying ``label``.

    Raises:
        PartitionNotFoundError: No partition has the label
        AmbiguousPartitionError: More than one partition has the label
    """
    matches = find_partitions_by_label(label, partitions)
    if not matches:
        raise PartitionNotFoundError(label)
    if len(matches) > 1:
        raise AmbiguousPartitionError(label, [match.name for match in matches])
    partition = matches[0]
    log.debug(f"Resolved label '{label}' to {partition.format_label()}")
    return partition.with_role(_role_for_label(label))


def try_resolve_role(
    label: str, partitions: Optional[Iterable[Partition]] = None
) -> Optional[Partition]:
    """Like resolve_role, but returns None when the label is absent."""
    try:
        return resolve_role(label, partitions)
    except PartitionNotFoundError:
        return None


def is_mountpoint_active(mountpoint: str) -> bool:
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def get_mountpoints(device_path: str) -> list[str]:
    """Return every mountpoint of a device node, according to the kernel."""
    real_path = os.path.realpath(device_path)
    mountpoints = []
    for entry in psutil.disk_partitions(all=True):
        if entry.device in (device_path, real_path):
            mountpoints.append(entry.mountpoint)
    return mountpoints


def is_read_only_mount(mountpoint: str) -> bool:
    """Whether the kernel reports ``mountpoint`` with the ``ro`` option."""
    for entry in psutil.disk_partitions(all=True):
        if entry.mountpoint == mountpoint:
            return "ro" in entry.opts.split(",")
    return False


def get_root_device() -> Optional[str]:
    """Device node backing ``/``, or None if it cannot be determined."""
    for entry in psutil.disk_partitions(all=True):
        if entry.mountpoint == "/" and entry.device.startswith("/dev/"):
            return entry.device
    return None
