"""Settings storage for reset configuration.

Labels are part of the on-disk contract between system generations: media
built by one release must be resettable by the next, so changing any of the
``*_label`` defaults is a breaking change.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "RPI_FACTORY_RESET_SETTINGS_PATH",
        "/etc/rpi-factory-reset/settings.json",
    )
)

DEFAULT_ACTIVE_LABEL = "writable"
DEFAULT_BACKUP_LABEL = "writable_backup"
DEFAULT_RECOVERY_LABEL = "pi-system-recovery"
DEFAULT_BOOT_LABEL = "system-boot"

DEFAULT_FLAG_FILENAME = "recovery_mode"
DEFAULT_CMDLINE_FILENAME = "cmdline.txt"
DEFAULT_SAVED_CONFIG_SUFFIX = ".pre-reset"
DEFAULT_AUDIT_LOG_FILENAME = "factory-reset.log"

DEFAULT_BLOCK_SIZE = 4 * 1024 * 1024

DEFAULT_SETTINGS: dict[str, Any] = {
    "active_label": DEFAULT_ACTIVE_LABEL,
    "backup_label": DEFAULT_BACKUP_LABEL,
    "recovery_label": DEFAULT_RECOVERY_LABEL,
    "boot_label": DEFAULT_BOOT_LABEL,
    "boot_mountpoint": "/boot/firmware",
    "flag_filename": DEFAULT_FLAG_FILENAME,
    "cmdline_filename": DEFAULT_CMDLINE_FILENAME,
    "saved_config_suffix": DEFAULT_SAVED_CONFIG_SUFFIX,
    "audit_log_filename": DEFAULT_AUDIT_LOG_FILENAME,
    # auto | inband | recovery
    "dispatch_mode": "auto",
    # python | rsync
    "tree_sync_backend": "python",
    "live_paths": ["/proc", "/sys", "/dev", "/run", "/tmp", "/lost+found"],
    "reset_tool_paths": [
        "/usr/local/bin/rpi-factory-reset",
        "/etc/systemd/system/rpi-factory-reset.service",
    ],
    "required_backup_dirs": ["etc", "usr", "var"],
    "critical_files": ["etc/fstab", "etc/passwd"],
    "block_size": DEFAULT_BLOCK_SIZE,
    "reboot_after_restore": False,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings(path: Path | None = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any, path: Path | None = None) -> None:
    settings_store.values[key] = value
    save_settings(path)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_list(key: str) -> list[str]:
    value = get_setting(key, [])
    if isinstance(value, str):
        return [value]
    return list(value or [])


load_settings()
