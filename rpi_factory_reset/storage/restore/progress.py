"""Progress tracking and formatting for restore operations."""

from __future__ import annotations

import re
import time
from typing import Optional

from rpi_factory_reset.logging import EventLogger, ThrottledLogger
from rpi_factory_reset.storage.devices import human_size


# rsync --info=progress2: "  1,234,567  45%   12.34MB/s    0:01:02"
RSYNC_PROGRESS_PATTERN = re.compile(
    r"^\s*([\d,]+)\s+(\d+)%\s+([\d.]+)([kMG]?B)/s\s+(\d+:\d{2}:\d{2})"
)
_RATE_MULTIPLIERS = {"B": 1, "kB": 1024, "MB": 1024**2, "GB": 1024**3}


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_line(bytes_copied, total_bytes, rate, eta):
    """One-line summary, e.g. "Wrote 1.2GB 40.0% 25.0MB/s ETA 01:10"."""
    line = f"Wrote {human_size(bytes_copied)}"
    if total_bytes:
        line = f"{line} {(bytes_copied / total_bytes) * 100:.1f}%"
    if rate:
        line = f"{line} {human_size(rate)}/s"
        if eta:
            line = f"{line} ETA {eta}"
    return line


def parse_rsync_progress(line: str) -> Optional[tuple[int, float, float]]:
    """Parse an rsync progress2 line into (bytes, percent, bytes_per_second)."""
    match = RSYNC_PROGRESS_PATTERN.match(line)
    if not match:
        return None
    bytes_copied = int(match.group(1).replace(",", ""))
    percent = float(match.group(2))
    rate = float(match.group(3)) * _RATE_MULTIPLIERS.get(match.group(4), 1)
    return bytes_copied, percent, rate


class RestoreProgress:
    """Accumulates copied bytes and emits throttled progress logs."""

    def __init__(self, log, total_bytes: Optional[int] = None, interval_seconds=5.0):
        self.log = log
        self.total_bytes = total_bytes
        self.bytes_copied = 0
        self.started = time.monotonic()
        self._throttled = ThrottledLogger(log, interval_seconds=interval_seconds)

    @property
    def rate(self) -> Optional[float]:
        elapsed = time.monotonic() - self.started
        if elapsed <= 0 or not self.bytes_copied:
            return None
        return self.bytes_copied / elapsed

    @property
    def eta(self):
        rate = self.rate
        if not rate or not self.total_bytes or self.bytes_copied > self.total_bytes:
            return None
        return format_eta((self.total_bytes - self.bytes_copied) / rate)

    @property
    def percent(self) -> Optional[float]:
        if not self.total_bytes:
            return None
        return min(100.0, (self.bytes_copied / self.total_bytes) * 100)

    def advance(self, count: int) -> None:
        self.bytes_copied += count
        self.report()

    def update(self, bytes_copied: int, rate: Optional[float] = None) -> None:
        self.bytes_copied = bytes_copied
        self.report(rate)

    def report(self, rate: Optional[float] = None) -> None:
        rate = rate if rate is not None else self.rate
        self._throttled.info(
            "restore-progress",
            format_progress_line(self.bytes_copied, self.total_bytes, rate, self.eta),
        )
        EventLogger.log_restore_progress(
            self.log.bind(tags=["progress"]),
            self.percent or 0.0,
            self.bytes_copied,
            (rate or 0.0) / (1024 * 1024),
        )
