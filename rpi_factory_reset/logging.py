from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "RPI_FACTORY_RESET_LOG_DIR",
        Path.home() / ".local" / "state" / "rpi-factory-reset" / "logs",
    )
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <10}</cyan> | "
    "<blue>{extra[job_id]: <16}</blue> | "
    "{message}"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <16} | {message}"
)

DEBUG_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <16} | {extra[tags]} | {message}"
)


def _should_log_progress(record) -> bool:
    """Per-chunk progress below INFO is only kept at TRACE."""
    if "progress" not in record["extra"].get("tags", []):
        return True
    if record["level"].no >= logger.level("INFO").no:
        return True
    return record["level"].no <= logger.level("TRACE").no


def _should_log_command(record) -> bool:
    """Echoed stdout/stderr of external commands is DEBUG material."""
    if record["message"].startswith(("stdout:", "stderr:")):
        return record["level"].no <= logger.level("DEBUG").no
    return True


def _combined_filter(record) -> bool:
    return _should_log_progress(record) and _should_log_command(record)


def _file_sinks(debug: bool, trace: bool) -> list[tuple[str, dict]]:
    sinks = [
        (
            "operations.log",
            dict(level="INFO", rotation="5 MB", retention="7 days", format=FILE_FORMAT),
        ),
        (
            "structured.jsonl",
            dict(
                level="INFO",
                rotation="10 MB",
                retention="7 days",
                serialize=True,
                format="{message}",
            ),
        ),
    ]
    if debug or trace:
        sinks.append(
            (
                "debug.log",
                dict(
                    level="DEBUG",
                    rotation="10 MB",
                    retention="3 days",
                    backtrace=True,
                    diagnose=True,
                    format=DEBUG_FILE_FORMAT,
                ),
            )
        )
    if trace:
        sinks.append(
            (
                "trace.log",
                dict(level="TRACE", rotation="50 MB", retention="1 day", format=FILE_FORMAT),
            )
        )
    return sinks


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Configure loguru for a CLI run or a boot-time dispatch.

    Console output goes to stderr (systemd captures it into the journal when
    running as the early boot unit). File sinks in ``log_dir``:

    - operations.log: INFO and above
    - structured.jsonl: INFO and above, serialized records
    - debug.log: DEBUG and above, only with ``debug`` or ``trace``
    - trace.log: everything including per-file progress, only with ``trace``

    The log directory usually lives on the Active root and is replaced by a
    restore like any other file. The record that survives a reset is the
    audit trail on the boot partition (see ``reset.audit``).

    Args:
        debug: Verbose console output and a debug.log file
        trace: Per-file restore output and a trace.log file
        log_dir: Overrides ``DEFAULT_LOG_DIR``
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "app"})

    console_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=CONSOLE_FORMAT,
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        # Early boot and the recovery root may be read-only
        logger.warning(f"File logging disabled, cannot create {log_dir}: {error}")
        return logger

    for filename, options in _file_sinks(debug, trace):
        options.setdefault("backtrace", False)
        options.setdefault("diagnose", False)
        logger.add(log_dir / filename, compression="zip", **options)

    return logger


@contextmanager
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Log start, completion and failure of a long-running operation.

    Everything logged inside the block, through any logger, carries
    ``job_id`` and ``operation`` in its extras.

    Args:
        operation: Short name such as "restore"
        job_id: Reuse an existing job id instead of generating one
        **details: Extra fields for the start record

    Yields:
        Logger bound to the operation

    Example:
        with operation_context("restore", job_id=job_id, mode="inband") as log:
            log.debug("Mounting backup read-only")
    """
    job_id = job_id or f"{operation}-{uuid.uuid4().hex[:8]}"
    title = operation.capitalize()

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        started = time.time()
        log.info(f"{title} started", **details)
        try:
            yield log
        except Exception as error:
            log.error(
                f"{title} failed",
                error=str(error),
                error_type=type(error).__name__,
                duration_seconds=round(time.time() - started, 2),
            )
            raise
        log.success(f"{title} completed", duration_seconds=round(time.time() - started, 2))


class LoggerFactory:
    """Bound loggers, one per component, so console and files show the source."""

    @staticmethod
    def for_restore(job_id: str | None = None, **details) -> Logger:
        if job_id is None:
            job_id = f"restore-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="restore", tags=["restore", "storage"], **details
        )

    @staticmethod
    def for_device() -> Logger:
        return logger.bind(source="device", tags=["device", "storage"])

    @staticmethod
    def for_scheduler() -> Logger:
        return logger.bind(source="scheduler", tags=["reset", "scheduler"])

    @staticmethod
    def for_dispatcher(mode: str = "-") -> Logger:
        return logger.bind(
            source="dispatcher", tags=["reset", "dispatcher"], dispatch_mode=mode
        )

    @staticmethod
    def for_system() -> Logger:
        """Mounts, external commands, settings."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """Emit at most one INFO record per key every ``interval_seconds``."""

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def info(self, key: str, message: str, **kwargs) -> None:
        now = time.time()
        if now - self.last_log_time.get(key, 0) < self.interval:
            return
        self.log.info(message, **kwargs)
        self.last_log_time[key] = now


class EventLogger:
    """Records with a fixed ``event_type`` for the structured log."""

    @staticmethod
    def log_reset_scheduled(log: Logger, mode: str, backup: str, **extra) -> None:
        log.info(
            "Factory reset scheduled",
            event_type="reset_scheduled",
            dispatch_mode=mode,
            backup_device=backup,
            **extra,
        )

    @staticmethod
    def log_restore_progress(
        log: Logger, percent: float, bytes_copied: int, speed_mbps: float, **extra
    ) -> None:
        log.debug(
            "Restore progress",
            event_type="restore_progress",
            percent=round(percent, 2),
            bytes_copied=bytes_copied,
            speed_mbps=round(speed_mbps, 2),
            **extra,
        )

    @staticmethod
    def log_restore_finished(
        log: Logger, ok: bool, source: str, destination: str, **extra
    ) -> None:
        method = log.success if ok else log.error
        method(
            "Restore finished" if ok else "Restore failed",
            event_type="restore_finished",
            ok=ok,
            source_device=source,
            target_device=destination,
            **extra,
        )
