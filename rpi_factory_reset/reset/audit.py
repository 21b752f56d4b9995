"""Append-only audit trail on the boot partition.

The boot partition is the one filesystem a restore never rewrites, so the
record of what each reset did lives there. Each event is one line::

    2026-03-01 12:00:00 | INFO | restore_finished | ok=true engine=tree-sync

Lines are flushed and fsynced as they are written and mirrored to loguru.
"""

from __future__ import annotations

import json
import os
from collections import deque
from datetime import datetime
from pathlib import Path

from rpi_factory_reset.config.settings import DEFAULT_AUDIT_LOG_FILENAME
from rpi_factory_reset.logging import LoggerFactory


log = LoggerFactory.for_system()


def _format_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "-"
    text = str(value)
    if not text or any(char.isspace() for char in text) or "|" in text or '"' in text:
        return json.dumps(text)
    return text


def format_event(level: str, event: str, fields: dict, now: datetime) -> str:
    pairs = " ".join(f"{key}={_format_value(value)}" for key, value in fields.items())
    line = f"{now.strftime('%Y-%m-%d %H:%M:%S')} | {level.upper()} | {event}"
    if pairs:
        line = f"{line} | {pairs}"
    return line


class AuditTrail:
    def __init__(self, boot_dir: str | Path, filename: str = DEFAULT_AUDIT_LOG_FILENAME):
        self.path = Path(boot_dir) / filename

    def record(self, level: str, event: str, **fields) -> str:
        """Append one event. A write failure is logged, not raised."""
        line = format_event(level, event, fields, datetime.now())
        log.log(level.upper(), f"audit: {event} {fields}" if fields else f"audit: {event}")
        try:
            with open(self.path, "a", encoding="utf-8") as audit_file:
                audit_file.write(line + "\n")
                audit_file.flush()
                os.fsync(audit_file.fileno())
        except OSError as error:
            log.error(f"Cannot append to audit trail {self.path}: {error}")
        return line

    def info(self, event: str, **fields) -> str:
        return self.record("INFO", event, **fields)

    def warning(self, event: str, **fields) -> str:
        return self.record("WARNING", event, **fields)

    def error(self, event: str, **fields) -> str:
        return self.record("ERROR", event, **fields)

    def tail(self, lines: int = 20) -> list[str]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8", errors="replace") as audit_file:
            return [line.rstrip("\n") for line in deque(audit_file, maxlen=lines)]
