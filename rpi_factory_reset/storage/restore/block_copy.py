"""Raw block copy of the backup partition onto the active partition."""

from __future__ import annotations

import os
import time
from typing import Iterable

from rpi_factory_reset.config.settings import DEFAULT_BLOCK_SIZE
from rpi_factory_reset.domain.models import EngineKind, RestoreResult
from rpi_factory_reset.logging import LoggerFactory
from rpi_factory_reset.storage.devices import get_mountpoints
from rpi_factory_reset.storage.exceptions import (
    MountVerificationError,
    PartitionSizeMismatchError,
)

from .base import RestoreEngine
from .progress import RestoreProgress


def device_size(path: str | os.PathLike) -> int:
    """Size in bytes of a block device or regular file."""
    fd = os.open(path, os.O_RDONLY)
    try:
        return os.lseek(fd, 0, os.SEEK_END)
    finally:
        os.close(fd)


class BlockCopyEngine(RestoreEngine):
    """Copy every byte of ``source`` onto an equal-sized ``destination``.

    The pair is checked before anything is written: a mounted destination or
    a size mismatch raises instead of returning a partial failure, because
    the destination is still untouched at that point.
    """

    kind = EngineKind.BLOCK_COPY

    def __init__(self, block_size: int = DEFAULT_BLOCK_SIZE, job_id=None):
        if block_size <= 0:
            raise ValueError(f"Invalid block size: {block_size}")
        self.block_size = block_size
        self.job_id = job_id

    def restore(self, source, destination, exclude: Iterable[str] = ()) -> RestoreResult:
        if tuple(exclude):
            raise ValueError("Block copy cannot exclude paths")
        log = LoggerFactory.for_restore(self.job_id, engine=self.kind.value)
        source = os.fspath(source)
        destination = os.fspath(destination)

        mountpoints = get_mountpoints(destination)
        if mountpoints:
            raise MountVerificationError(destination, mountpoints[0])

        started = time.monotonic()
        try:
            source_size = device_size(source)
            destination_size = device_size(destination)
        except OSError as error:
            return RestoreResult.partial_failure(
                self.kind,
                f"Cannot open device: {error.strerror or error}",
                path=error.filename or source,
                offset=0,
            )
        if source_size != destination_size:
            raise PartitionSizeMismatchError(
                source, source_size, destination, destination_size
            )

        log.info(
            f"Block copy {source} -> {destination} "
            f"({source_size} bytes, {self.block_size} byte blocks)"
        )
        progress = RestoreProgress(log, total_bytes=source_size)
        offset = 0
        try:
            with open(source, "rb", buffering=0) as src, open(
                destination, "r+b", buffering=0
            ) as dst:
                while offset < source_size:
                    chunk = src.read(min(self.block_size, source_size - offset))
                    if not chunk:
                        raise OSError(f"Unexpected end of {source}")
                    view = memoryview(chunk)
                    while view:
                        written = dst.write(view)
                        view = view[written:]
                        offset += written
                    progress.advance(len(chunk))
                os.fsync(dst.fileno())
        except OSError as error:
            log.error(f"Block copy aborted at offset {offset}: {error}")
            return RestoreResult.partial_failure(
                self.kind,
                f"I/O error: {getattr(error, 'strerror', None) or error}",
                path=destination,
                offset=offset,
                bytes_copied=offset,
                duration_seconds=time.monotonic() - started,
            )

        log.info(f"Block copy complete: {offset} bytes")
        return RestoreResult.success(
            self.kind,
            bytes_copied=offset,
            duration_seconds=time.monotonic() - started,
        )
