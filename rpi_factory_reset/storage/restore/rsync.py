"""Tree mirror delegated to rsync.

Same contract as :class:`~.tree_sync.TreeSyncEngine`, executed with the
flags the original reset scripts used. rsync also writes into temporary
files and renames them, so files that are open while the copy runs keep
their old inode.
"""

from __future__ import annotations

import re
import time
from typing import Iterable

from rpi_factory_reset.domain.models import EngineKind, RestoreResult
from rpi_factory_reset.logging import LoggerFactory

from .base import RestoreEngine, normalize_excludes
from .command_runners import run_checked_with_streaming_progress
from .progress import RestoreProgress


RSYNC_FLAGS = ["-axHAWXS", "--numeric-ids", "--delete", "--info=progress2"]

_QUOTED_PATH = re.compile(r'"(/[^"]+)"')


def build_rsync_command(source, destination, exclude: Iterable[str] = (), binary="rsync"):
    command = [binary, *RSYNC_FLAGS]
    for path in sorted(normalize_excludes(exclude)):
        # Leading slash anchors the pattern at the transfer root
        command.append(f"--exclude=/{path}")
    command.append(f"{str(source).rstrip('/')}/")
    command.append(f"{str(destination).rstrip('/')}/")
    return command


class RsyncTreeSyncEngine(RestoreEngine):
    kind = EngineKind.TREE_SYNC

    def __init__(self, binary: str = "rsync", job_id=None):
        self.binary = binary
        self.job_id = job_id

    def restore(self, source, destination, exclude: Iterable[str] = ()) -> RestoreResult:
        log = LoggerFactory.for_restore(self.job_id, engine="rsync")
        command = build_rsync_command(source, destination, exclude, self.binary)
        progress = RestoreProgress(log)
        started = time.monotonic()

        def on_progress(bytes_copied, percent, rate):
            progress.update(bytes_copied, rate)

        log.info(f"Mirroring {source} -> {destination} with rsync")
        try:
            run_checked_with_streaming_progress(command, progress_callback=on_progress)
        except (RuntimeError, OSError) as error:
            message = str(error)
            match = _QUOTED_PATH.search(message)
            log.error(f"rsync failed: {message}")
            return RestoreResult.partial_failure(
                self.kind,
                message,
                path=match.group(1) if match else str(destination),
                bytes_copied=progress.bytes_copied,
                duration_seconds=time.monotonic() - started,
            )
        return RestoreResult.success(
            self.kind,
            bytes_copied=progress.bytes_copied,
            duration_seconds=time.monotonic() - started,
        )
