"""One restore at a time within this process.

The reset intent serializes restores across reboots. Within one process
this lock records which partition a restore is writing to: a second restore
is refused, ``Scheduler.status`` reports the running restore and
``Scheduler.cancel`` refuses to pull the intent out from under it.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Generator

from rpi_factory_reset.logging import LoggerFactory

from .exceptions import RestoreInProgressError


log = LoggerFactory.for_device()

_lock = threading.Lock()
_restoring: str | None = None


@contextmanager
def device_operation(device_name: str) -> Generator[None, None, None]:
    """Hold the restore slot for ``device_name`` while the block runs.

    Raises:
        RestoreInProgressError: Another restore holds the slot
    """
    global _restoring

    with _lock:
        if _restoring is not None:
            raise RestoreInProgressError(_restoring)
        _restoring = device_name
    log.debug(f"Restore slot taken for {device_name}")

    try:
        yield
    finally:
        with _lock:
            _restoring = None
        log.debug(f"Restore slot released for {device_name}")


def get_active_device() -> str | None:
    """Partition a restore is writing to right now, or None."""
    with _lock:
        return _restoring
