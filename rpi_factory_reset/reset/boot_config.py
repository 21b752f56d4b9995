"""Kernel command line on the boot partition.

Scheduling a recovery-mode reset points ``root=`` at the recovery partition.
Before that, a byte-identical copy of ``cmdline.txt`` is saved next to it;
restoring puts those exact bytes back.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from rpi_factory_reset.config.settings import (
    DEFAULT_CMDLINE_FILENAME,
    DEFAULT_SAVED_CONFIG_SUFFIX,
)
from rpi_factory_reset.logging import LoggerFactory
from rpi_factory_reset.storage.exceptions import ConfigurationCorruptError

from .durable import atomic_write, durable_unlink


log = LoggerFactory.for_scheduler()

ROOT_PARAM_PATTERN = re.compile(r"(?<!\S)root=(\S+)")


class BootConfig:
    def __init__(
        self,
        boot_dir: str | Path,
        filename: str = DEFAULT_CMDLINE_FILENAME,
        saved_suffix: str = DEFAULT_SAVED_CONFIG_SUFFIX,
    ):
        self.boot_dir = Path(boot_dir)
        self.path = self.boot_dir / filename
        self.saved_path = self.boot_dir / f"{filename}{saved_suffix}"

    def exists(self) -> bool:
        return self.path.exists()

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def root_value(self) -> Optional[str]:
        """Value of the ``root=`` kernel parameter, or None."""
        if not self.path.exists():
            return None
        text = self.read_bytes().decode("utf-8", errors="surrogateescape")
        match = ROOT_PARAM_PATTERN.search(text)
        return match.group(1) if match else None

    def points_at(self, label: str) -> bool:
        return self.root_value() == f"LABEL={label}"

    def has_saved_copy(self) -> bool:
        return self.saved_path.exists()

    def save_copy(self) -> None:
        """Save the current command line verbatim."""
        atomic_write(self.saved_path, self.read_bytes())
        log.debug(f"Saved boot configuration to {self.saved_path}")

    def point_root_at(self, label: str) -> None:
        """Rewrite ``root=`` to ``LABEL=<label>``, leaving every other byte alone."""
        text = self.read_bytes().decode("utf-8", errors="surrogateescape")
        replacement = f"root=LABEL={label}"
        if ROOT_PARAM_PATTERN.search(text):
            text = ROOT_PARAM_PATTERN.sub(replacement, text, count=1)
        else:
            stripped = text.rstrip("\n")
            text = f"{stripped} {replacement}".lstrip() + text[len(stripped):]
        atomic_write(self.path, text.encode("utf-8", errors="surrogateescape"))
        log.info(f"Boot configuration now selects root=LABEL={label}")

    def restore_saved(self) -> None:
        """Put the saved copy back, byte for byte.

        Raises:
            ConfigurationCorruptError: If the saved copy is missing or empty
        """
        try:
            data = self.saved_path.read_bytes()
        except FileNotFoundError as error:
            raise ConfigurationCorruptError(
                str(self.saved_path), "saved copy is missing"
            ) from error
        if not data.strip():
            raise ConfigurationCorruptError(str(self.saved_path), "saved copy is empty")
        atomic_write(self.path, data)
        log.info(f"Restored boot configuration from {self.saved_path}")

    def discard_saved(self) -> bool:
        return durable_unlink(self.saved_path)
