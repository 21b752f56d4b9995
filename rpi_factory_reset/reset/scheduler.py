"""Reset scheduler: the Idle/Scheduled state machine on the running system.

The scheduler only ever records intent. The restore itself runs on the next
boot, from the boot dispatcher.

Transitions and their on-disk order:

    schedule (recovery)   save cmdline copy -> create flag -> rewrite cmdline
    schedule (in-band)    create flag
    cancel                restore cmdline from copy -> delete flag -> delete copy

A power cut between any two steps leaves a state that ``status`` reports
honestly and that ``cancel`` or a fresh ``schedule`` can finish cleanly.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Optional

from rpi_factory_reset.config import settings
from rpi_factory_reset.domain.models import (
    DispatchMode,
    Partition,
    ResetState,
    ResetStatus,
)
from rpi_factory_reset.logging import EventLogger, LoggerFactory
from rpi_factory_reset.storage.device_lock import get_active_device
from rpi_factory_reset.storage.devices import list_partitions, resolve_role, try_resolve_role
from rpi_factory_reset.storage.exceptions import (
    AlreadyScheduledError,
    ConfigurationCorruptError,
    ConfirmationDeclinedError,
    NotScheduledError,
    RestoreInProgressError,
)
from rpi_factory_reset.storage.mount import mounted
from rpi_factory_reset.storage.validation import validate_backup_tree, validate_pair

from .audit import AuditTrail
from .boot_config import BootConfig
from .intent import IntentStore


log = LoggerFactory.for_scheduler()

ConfirmFn = Callable[[str], bool]


def default_boot_dir() -> Path:
    return Path(settings.get_setting("boot_mountpoint", "/boot/firmware"))


def resolve_dispatch_mode(partitions: Iterable[Partition]) -> DispatchMode:
    """Pick the dispatcher for this system.

    ``dispatch_mode = auto`` selects the recovery environment when a
    recovery partition is present and the in-band dispatcher otherwise.

    Raises:
        PartitionNotFoundError: ``recovery`` is configured but absent
        AmbiguousPartitionError: The recovery label is carried twice
    """
    partitions = list(partitions)
    recovery_label = settings.get_setting("recovery_label")
    configured = DispatchMode.parse(settings.get_setting("dispatch_mode"))
    if configured is DispatchMode.INBAND:
        return DispatchMode.INBAND
    if configured is DispatchMode.RECOVERY:
        resolve_role(recovery_label, partitions)
        return DispatchMode.RECOVERY
    if try_resolve_role(recovery_label, partitions) is not None:
        return DispatchMode.RECOVERY
    return DispatchMode.INBAND


class Scheduler:
    def __init__(self, boot_dir: Optional[str | Path] = None):
        self.boot_dir = Path(boot_dir) if boot_dir else default_boot_dir()
        self.intent = IntentStore(self.boot_dir, settings.get_setting("flag_filename"))
        self.boot_config = BootConfig(
            self.boot_dir,
            settings.get_setting("cmdline_filename"),
            settings.get_setting("saved_config_suffix"),
        )
        self.audit = AuditTrail(self.boot_dir, settings.get_setting("audit_log_filename"))
        self.active_label = settings.get_setting("active_label")
        self.backup_label = settings.get_setting("backup_label")
        self.recovery_label = settings.get_setting("recovery_label")

    def schedule(self, confirm: ConfirmFn) -> ResetStatus:
        """Validate, confirm, and record a reset for the next boot.

        Args:
            confirm: Called with the prompt text; must return True to proceed

        Raises:
            AlreadyScheduledError: A reset is already pending
            ValidationError: The partition layout or backup is unusable
            ConfigurationCorruptError: Recovery mode without a cmdline.txt
            ConfirmationDeclinedError: ``confirm`` returned False
        """
        if self.intent.exists():
            raise AlreadyScheduledError(str(self.intent.path))

        partitions = list_partitions()
        active, backup = validate_pair(
            self.active_label, self.backup_label, partitions=partitions
        )
        with mounted(backup.device_path, read_only=True) as backup_root:
            validate_backup_tree(
                backup_root,
                settings.get_list("required_backup_dirs"),
                device=backup.device_path,
            )
        mode = resolve_dispatch_mode(partitions)
        if mode is DispatchMode.RECOVERY and not self.boot_config.exists():
            raise ConfigurationCorruptError(
                str(self.boot_config.path), "boot configuration not found"
            )
        log.debug(
            f"Reset pair validated: active={active.format_label()} "
            f"backup={backup.format_label()} mode={mode.value}"
        )

        prompt = (
            f"All changes on {active.device_path} ({self.active_label}) will be "
            f"replaced by {backup.device_path} ({self.backup_label}) on the next "
            "boot. Type 'yes' to continue: "
        )
        if not confirm(prompt):
            log.info("Factory reset not confirmed")
            raise ConfirmationDeclinedError()

        if mode is DispatchMode.RECOVERY:
            self._schedule_recovery(active)
        else:
            self.intent.create(mode, active=active.name)

        self.audit.info(
            "reset_scheduled",
            mode=mode.value,
            active=active.device_path,
            backup=backup.device_path,
        )
        EventLogger.log_reset_scheduled(log, mode.value, backup.device_path)
        return self.status()

    def _schedule_recovery(self, active: Partition) -> None:
        if self.boot_config.points_at(self.recovery_label):
            # Left over from an interrupted schedule: the saved copy, if any,
            # is the only record of the original root and must be kept.
            if not self.boot_config.has_saved_copy():
                raise ConfigurationCorruptError(
                    str(self.boot_config.saved_path),
                    "missing while cmdline.txt already selects the recovery partition",
                )
        else:
            self.boot_config.save_copy()
        self.intent.create(DispatchMode.RECOVERY, active=active.name)
        self.boot_config.point_root_at(self.recovery_label)

    def status(self) -> ResetStatus:
        """Report the current state without changing anything."""
        boot_config_modified = self.boot_config.points_at(self.recovery_label)
        restoring = get_active_device()
        if not self.intent.exists():
            return ResetStatus(
                ResetState.IDLE,
                boot_config_modified=boot_config_modified,
                restoring=restoring,
            )
        payload = self.intent.read()
        return ResetStatus(
            ResetState.SCHEDULED,
            mode=DispatchMode.parse(payload.get("mode")),
            scheduled_at=payload.get("scheduled_at"),
            boot_config_modified=boot_config_modified,
            restoring=restoring,
        )

    def cancel(self) -> ResetStatus:
        """Undo a pending reset.

        Raises:
            NotScheduledError: Nothing is pending
            RestoreInProgressError: A restore is writing in this process
            ConfigurationCorruptError: cmdline.txt selects the recovery
                partition but the saved copy is gone
        """
        if not self.intent.exists():
            raise NotScheduledError(str(self.intent.path))
        restoring = get_active_device()
        if restoring is not None:
            raise RestoreInProgressError(restoring)

        if self.boot_config.has_saved_copy():
            self.boot_config.restore_saved()
        elif self.boot_config.points_at(self.recovery_label):
            self.audit.error(
                "cancel_failed", reason="saved boot configuration missing"
            )
            raise ConfigurationCorruptError(
                str(self.boot_config.saved_path),
                "missing while cmdline.txt selects the recovery partition",
            )

        self.intent.clear()
        self.boot_config.discard_saved()
        self.audit.info("reset_cancelled")
        log.info("Factory reset cancelled")
        return self.status()
