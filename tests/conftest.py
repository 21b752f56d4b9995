"""
Pytest configuration and shared fixtures for rpi-factory-reset tests.

This module provides lsblk fixtures describing a Pi boot disk, temporary
directory trees standing in for the backup and active root filesystems, and
a fake mount helper that maps device nodes onto those trees.
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict

import pytest

from rpi_factory_reset.config import settings
from rpi_factory_reset.domain.models import StorageDevice
from rpi_factory_reset.storage import devices


PARTITION_SIZE = 4 * 1024**3

CMDLINE = (
    b"console=serial0,115200 console=tty1 root=LABEL=writable rootfstype=ext4 "
    b"fsck.repair=yes rootwait\n"
)

FSTAB = (
    "LABEL=writable\t/\text4\tdefaults\t0\t1\n"
    "LABEL=system-boot\t/boot/firmware\tvfat\tdefaults\t0\t1\n"
)


# ==============================================================================
# Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_lsblk_cache():
    devices._lsblk_cache = None
    devices._lsblk_cache_time = None
    devices._last_lsblk_names = None
    yield
    devices._lsblk_cache = None
    devices._lsblk_cache_time = None


@pytest.fixture(autouse=True)
def default_settings(tmp_path, monkeypatch):
    """Every test starts from the default settings and never touches /etc."""
    monkeypatch.setattr(
        "rpi_factory_reset.config.settings.SETTINGS_PATH",
        tmp_path / "settings" / "settings.json",
    )
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield settings.settings_store.values
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture(autouse=True)
def no_host_mounts(mocker):
    """Hide the host's mount table from the code under test."""
    return mocker.patch(
        "rpi_factory_reset.storage.devices.psutil.disk_partitions", return_value=[]
    )


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_pi_disk() -> Dict[str, Any]:
    """
    Fixture providing an lsblk disk dict for a booted Pi SD card.

    Partition 2 is the backup and partition 3 the active root, as laid out
    by the media builder.
    """
    return {
        "name": "mmcblk0",
        "type": "disk",
        "size": 3 * PARTITION_SIZE + 536870912,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "children": [
            {
                "name": "mmcblk0p1",
                "type": "part",
                "size": 536870912,
                "mountpoint": "/boot/firmware",
                "fstype": "vfat",
                "label": "system-boot",
            },
            {
                "name": "mmcblk0p2",
                "type": "part",
                "size": PARTITION_SIZE,
                "mountpoint": None,
                "fstype": "ext4",
                "label": "writable_backup",
            },
            {
                "name": "mmcblk0p3",
                "type": "part",
                "size": PARTITION_SIZE,
                "mountpoint": "/",
                "fstype": "ext4",
                "label": "writable",
            },
        ],
    }


@pytest.fixture
def mock_pi_disk_with_recovery(mock_pi_disk) -> Dict[str, Any]:
    """Pi disk with an additional recovery partition."""
    mock_pi_disk["children"].append(
        {
            "name": "mmcblk0p4",
            "type": "part",
            "size": 1073741824,
            "mountpoint": None,
            "fstype": "ext4",
            "label": "pi-system-recovery",
        }
    )
    return mock_pi_disk


@pytest.fixture
def mock_external_disk(mock_pi_disk) -> Dict[str, Any]:
    """The same card seen from another machine through a USB reader."""
    disk = {
        "name": "sdb",
        "type": "disk",
        "size": mock_pi_disk["size"],
        "mountpoint": None,
        "children": [],
    }
    for index, child in enumerate(mock_pi_disk["children"], start=1):
        disk["children"].append(
            {**child, "name": f"sdb{index}", "mountpoint": None}
        )
    return disk


@pytest.fixture
def pi_partitions(mock_pi_disk):
    return list(StorageDevice.from_lsblk_dict(mock_pi_disk).partitions)


@pytest.fixture
def mock_lsblk(mocker, mock_pi_disk):
    """Patch lsblk enumeration to return the Pi disk."""
    return mocker.patch(
        "rpi_factory_reset.storage.devices.get_block_devices",
        return_value=[mock_pi_disk],
    )


@pytest.fixture
def mock_lsblk_with_recovery(mocker, mock_pi_disk_with_recovery):
    return mocker.patch(
        "rpi_factory_reset.storage.devices.get_block_devices",
        return_value=[mock_pi_disk_with_recovery],
    )


# ==============================================================================
# Filesystem Fixtures
# ==============================================================================


def write_file(root: Path, rel: str, content, mode=None) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    if mode is not None:
        os.chmod(path, mode)
    return path


def snapshot(root: Path, ignore=()) -> Dict[str, Any]:
    """Map every path under ``root`` to what a mirror must reproduce."""
    result = {}
    for current, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(current) / name
            rel = path.relative_to(root).as_posix()
            if any(rel == item or rel.startswith(item + "/") for item in ignore):
                continue
            if path.is_symlink():
                result[rel] = ("link", os.readlink(path))
            elif path.is_dir():
                result[rel] = ("dir", oct(path.stat().st_mode & 0o7777))
            else:
                result[rel] = (
                    "file",
                    path.read_bytes(),
                    oct(path.stat().st_mode & 0o7777),
                )
    return result


OLD_MTIME = 1_600_000_000


def age_tree(root: Path, mtime: int = OLD_MTIME) -> None:
    """Backdate every entry so quick checks never mistake it for unchanged."""
    for current, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            os.utime(Path(current) / name, (mtime, mtime), follow_symlinks=False)


@pytest.fixture
def boot_dir(tmp_path) -> Path:
    """Boot partition with a stock cmdline.txt."""
    path = tmp_path / "boot"
    path.mkdir()
    (path / "cmdline.txt").write_bytes(CMDLINE)
    return path


@pytest.fixture
def backup_tree(tmp_path) -> Path:
    """Known-good root filesystem."""
    root = tmp_path / "backup"
    write_file(root, "etc/fstab", FSTAB)
    write_file(root, "etc/passwd", "root:x:0:0:root:/root:/bin/bash\n")
    write_file(root, "etc/hostname", "factory\n")
    write_file(root, "usr/bin/hello", "#!/bin/sh\necho hello\n", mode=0o755)
    write_file(root, "usr/local/bin/rpi-factory-reset", "#!/bin/sh\n# v1\n", mode=0o755)
    write_file(root, "var/lib/app/state.json", "{}\n")
    (root / "home" / "pi").mkdir(parents=True)
    (root / "proc").mkdir()
    (root / "tmp").mkdir()
    os.symlink("hello", root / "usr" / "bin" / "hi")
    age_tree(root)
    return root


@pytest.fixture
def active_tree(tmp_path) -> Path:
    """Active root filesystem after a user has changed things."""
    root = tmp_path / "active"
    write_file(root, "etc/fstab", FSTAB)
    write_file(root, "etc/passwd", "root:x:0:0:root:/root:/bin/bash\npi:x:1000:1000::/home/pi:/bin/bash\n")
    write_file(root, "etc/hostname", "tinkered\n")
    write_file(root, "usr/bin/hello", "#!/bin/sh\necho modified\n", mode=0o755)
    write_file(root, "usr/local/bin/rpi-factory-reset", "#!/bin/sh\n# v2\n", mode=0o755)
    write_file(root, "home/pi/notes.txt", "remember me\n")
    write_file(root, "var/lib/app/cache.db", "junk")
    write_file(root, "proc/live", "kernel state")
    write_file(root, "tmp/session", "scratch")
    return root


@pytest.fixture
def mount_map(backup_tree, active_tree) -> Dict[str, Path]:
    return {"/dev/mmcblk0p2": backup_tree, "/dev/mmcblk0p3": active_tree}


@pytest.fixture
def fake_mounted(mount_map):
    """Stand-in for storage.mount.mounted() backed by ``mount_map``."""
    calls = []

    @contextmanager
    def _mounted(device, read_only=False, prefix="rpi-factory-reset-"):
        calls.append((device, read_only))
        yield mount_map[device]

    _mounted.calls = calls
    return _mounted
