"""The reset intent: a flag file on the boot partition.

Presence of the file is the whole state. A short ``key=value`` payload
records how and when the reset was scheduled, for status output and the
audit trail only; nothing depends on being able to read it.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from rpi_factory_reset.config.settings import DEFAULT_FLAG_FILENAME
from rpi_factory_reset.domain.models import DispatchMode
from rpi_factory_reset.logging import LoggerFactory
from rpi_factory_reset.storage.exceptions import AlreadyScheduledError

from .durable import create_exclusive, durable_unlink


log = LoggerFactory.for_scheduler()


class IntentStore:
    def __init__(self, boot_dir: str | Path, filename: str = DEFAULT_FLAG_FILENAME):
        self.boot_dir = Path(boot_dir)
        self.path = self.boot_dir / filename

    def exists(self) -> bool:
        return self.path.exists()

    def create(
        self, mode: DispatchMode, now: Optional[datetime] = None, **details
    ) -> None:
        """Write the flag atomically.

        Extra ``details`` are appended to the payload as ``key=value`` lines.

        Raises:
            AlreadyScheduledError: If the flag already exists
        """
        now = now or datetime.now()
        payload = (
            f"mode={mode.value}\n"
            f"scheduled_at={now.strftime('%Y-%m-%d %H:%M:%S')}\n"
        ) + "".join(f"{key}={value}\n" for key, value in details.items())
        try:
            create_exclusive(self.path, payload.encode("utf-8"))
        except FileExistsError as error:
            raise AlreadyScheduledError(str(self.path)) from error
        log.debug(f"Created reset intent {self.path}")

    def read(self) -> dict[str, str]:
        """Parse the informational payload. Missing or odd content gives {}."""
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return {}
        values = {}
        for line in text.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                values[key.strip()] = value.strip()
        return values

    def mode(self) -> Optional[DispatchMode]:
        return DispatchMode.parse(self.read().get("mode"))

    def clear(self) -> bool:
        """Delete the flag. Returns False if there was none."""
        removed = durable_unlink(self.path)
        if removed:
            log.debug(f"Cleared reset intent {self.path}")
        return removed
