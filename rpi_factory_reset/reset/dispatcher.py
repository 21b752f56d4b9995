"""Boot dispatchers: consume a pending reset intent and run the restore.

Two dispatchers exist, and a system uses exactly one of them:

``InBandDispatcher``
    The canonical path. An early-boot oneshot unit on the Active root runs
    ``rpi-factory-reset dispatch`` before ``sysinit.target`` whenever the
    intent flag exists. The backup tree is mirrored file by file onto the
    running root; the tool's own files are excluded from the mirror and
    re-provisioned from the backup afterwards.

``RecoveryDispatcher``
    For media built with a recovery partition. The scheduler points
    ``cmdline.txt`` at the recovery root, whose boot runs
    ``rpi-factory-reset recover``: a raw block copy Backup -> Active, then
    relabel, restore ``cmdline.txt``, clear the intent and reboot.

Either dispatcher clears the intent only after the restore has completed
and been verified. Any failure leaves the intent in place, appends the
failure to the audit trail and raises.

``refresh_backup`` runs the same tree sync the other way round: it makes the
current Active root the new known-good Backup.
"""

from __future__ import annotations

import importlib
import os
import re
import shutil
import stat
import sys
import uuid
from importlib import metadata
from pathlib import Path
from typing import Iterable, Optional

from rpi_factory_reset.config import settings
from rpi_factory_reset.domain.models import (
    DispatchMode,
    EngineKind,
    Partition,
    PartitionRole,
    RestoreResult,
)
from rpi_factory_reset.logging import EventLogger, LoggerFactory, operation_context
from rpi_factory_reset.storage.device_lock import device_operation
from rpi_factory_reset.storage.devices import find_partitions_by_label, list_partitions
from rpi_factory_reset.storage.exceptions import (
    AlreadyScheduledError,
    ConfigurationCorruptError,
    ConfirmationDeclinedError,
    MountVerificationError,
    PartitionNotFoundError,
    RestoreIOError,
    RestoreVerificationError,
    StorageError,
)
from rpi_factory_reset.storage.mount import mounted
from rpi_factory_reset.storage.relabel import regenerate_uuid, relabel_partition
from rpi_factory_reset.storage.restore import get_engine
from rpi_factory_reset.storage.validation import (
    validate_backup_tree,
    validate_block_pair,
    validate_not_running_root,
    validate_pair,
)

from .audit import AuditTrail
from .boot_config import BootConfig
from .durable import atomic_write
from .intent import IntentStore
from .scheduler import ConfirmFn, default_boot_dir
from .systemd import reboot


log = LoggerFactory.for_dispatcher()

MIN_RESTORED_BYTES = 100 * 1024 * 1024

DISTRIBUTION_NAME = "rpi-factory-reset"
RUNTIME_PACKAGES = ("loguru", "psutil")


# ==============================================================================
# Tree restore helpers
# ==============================================================================


def _metadata_dirs(distribution_name: str) -> set[str]:
    try:
        distribution = metadata.distribution(distribution_name)
    except metadata.PackageNotFoundError:
        return set()
    dirs = set()
    for file in distribution.files or ():
        if file.parts and file.parts[0].endswith((".dist-info", ".egg-info")):
            dirs.add(str(Path(distribution.locate_file(file.parts[0])).resolve()))
    return dirs


def dependency_paths(packages: Iterable[str] = RUNTIME_PACKAGES) -> list[str]:
    """Installed directories of the libraries the tool imports, with their metadata."""
    paths = _metadata_dirs(DISTRIBUTION_NAME)
    for name in packages:
        module = importlib.import_module(name)
        paths.add(str(Path(module.__file__).resolve().parent))
        paths.update(_metadata_dirs(name))
    return sorted(paths)


def self_paths() -> list[str]:
    """Files the running restore depends on.

    Tool paths from settings, this package, the entry script and the
    installed runtime libraries. A backup taken before the tool was
    installed lacks all of them.
    """
    paths = set(settings.get_list("reset_tool_paths"))
    paths.add(str(Path(__file__).resolve().parent.parent))
    paths.update(dependency_paths())
    if sys.argv and sys.argv[0]:
        script = Path(sys.argv[0])
        if script.is_absolute() and script.exists():
            paths.add(str(script.resolve()))
    return sorted(paths)


def reprovision_tools(
    backup_root: Path, active_root: Path, paths: Iterable[str], job_id=None
) -> list[str]:
    """Copy the tool's files from the backup onto the freshly restored tree.

    Paths missing from the backup are left as they are on Active, so the
    tool is never lost by a restore.

    Returns:
        The paths that were re-provisioned
    """
    provisioned = []
    for path in paths:
        rel = path.lstrip("/")
        source = backup_root / rel
        target = active_root / rel
        if not os.path.lexists(source):
            log.warning(f"{path} not present in backup, keeping the current copy")
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir() and not source.is_symlink():
            target.mkdir(exist_ok=True)
            result = get_engine(EngineKind.TREE_SYNC, backend="python", job_id=job_id).restore(
                source, target
            )
            if not result.ok:
                raise RestoreIOError(
                    f"Failed to re-provision {path}: {result.describe_failure()}",
                    path=result.path,
                )
        else:
            _replace_file(source, target)
        provisioned.append(path)
    if provisioned:
        log.info(f"Re-provisioned {len(provisioned)} tool paths from backup")
    return provisioned


def _replace_file(source: Path, target: Path) -> None:
    tmp_path = target.with_name(f".rfr-tmp-{uuid.uuid4().hex[:12]}")
    try:
        shutil.copy2(source, tmp_path, follow_symlinks=False)
        if os.geteuid() == 0:
            st = os.lstat(source)
            os.lchown(tmp_path, st.st_uid, st.st_gid)
            if not stat.S_ISLNK(st.st_mode):
                os.chmod(tmp_path, stat.S_IMODE(st.st_mode))
        os.replace(tmp_path, target)
    except OSError as error:
        if os.path.lexists(tmp_path):
            os.unlink(tmp_path)
        raise RestoreIOError(
            f"Failed to re-provision {target}: {error.strerror or error}",
            path=str(target),
        ) from error


def repair_fstab(root: Path, backup_label: str, active_label: str) -> bool:
    """Point a root entry ``LABEL=<backup>`` in etc/fstab at the active label.

    Returns:
        True if the file was changed
    """
    fstab = Path(root) / "etc" / "fstab"
    if not fstab.is_file():
        return False
    lines = fstab.read_text(encoding="utf-8").splitlines(keepends=True)
    pattern = re.compile(rf"^(\s*)LABEL={re.escape(backup_label)}(?=\s)")
    changed = False
    for index, line in enumerate(lines):
        fields = line.split()
        if len(fields) >= 2 and fields[1] == "/" and pattern.match(line):
            lines[index] = pattern.sub(rf"\g<1>LABEL={active_label}", line, count=1)
            changed = True
    if changed:
        atomic_write(fstab, "".join(lines).encode("utf-8"))
        log.info(f"Repaired root entry in {fstab}: LABEL={active_label}")
    return changed


def verify_critical_files(root: Path, critical_files: Iterable[str]) -> None:
    """Raise RestoreVerificationError unless every critical file is non-empty."""
    root = Path(root)
    missing = []
    for rel in critical_files:
        path = root / rel.lstrip("/")
        if not path.is_file() or path.stat().st_size == 0:
            missing.append(rel)
    if missing:
        raise RestoreVerificationError(
            f"Critical files missing after restore: {', '.join(missing)}",
            path=str(root / missing[0].lstrip("/")),
        )
    try:
        used = shutil.disk_usage(root).used
    except OSError as error:
        log.debug(f"Cannot read disk usage of {root}: {error}")
        return
    if used < MIN_RESTORED_BYTES:
        log.warning(f"Restored filesystem uses only {used} bytes, check the backup")


def tree_restore(
    active: Partition,
    backup: Partition,
    exclude: Iterable[str],
    reprovision: Iterable[str] = (),
    job_id: Optional[str] = None,
) -> RestoreResult:
    """Mirror Backup onto Active with the configured tree sync engine.

    Raises:
        BackupStructureError: The backup does not look like a root filesystem
        RestoreIOError: The mirror did not complete
        RestoreVerificationError: Post-restore checks failed
    """
    exclude = list(exclude)
    reprovision = list(reprovision)
    with mounted(backup.device_path, read_only=True) as backup_root, mounted(
        active.device_path
    ) as active_root:
        validate_backup_tree(
            backup_root,
            settings.get_list("required_backup_dirs"),
            device=backup.device_path,
        )
        engine = get_engine(EngineKind.TREE_SYNC, job_id=job_id)
        with device_operation(active.name):
            result = engine.restore(
                backup_root, active_root, exclude=exclude + reprovision
            )
            if not result.ok:
                raise RestoreIOError(
                    f"Restore of {active.device_path} incomplete: "
                    f"{result.describe_failure()}",
                    path=result.path,
                    offset=result.offset,
                )
            reprovision_tools(backup_root, active_root, reprovision, job_id)
            repair_fstab(active_root, backup.label or "", active.label or "")
            verify_critical_files(active_root, settings.get_list("critical_files"))
    return result


# ==============================================================================
# Dispatchers
# ==============================================================================


class BaseDispatcher:
    mode: DispatchMode

    def __init__(
        self,
        boot_dir: Optional[str | Path] = None,
        reboot_after: Optional[bool] = None,
    ):
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
        if reboot_after is None:
            reboot_after = settings.get_bool("reboot_after_restore")
        self.reboot_after = reboot_after
        self.log = LoggerFactory.for_dispatcher(self.mode.value)

    def should_run(self) -> bool:
        return self.intent.exists()

    def run(self) -> bool:
        """Run one restore if a reset is pending.

        Returns:
            False if there was nothing to do, True after a successful restore

        Raises:
            StorageError: The restore failed; the intent is left in place
        """
        if not self.should_run():
            self.log.info("No factory reset scheduled")
            return False

        job_id = f"restore-{uuid.uuid4().hex[:8]}"
        payload = self.intent.read()
        self.audit.info(
            "dispatch_started",
            mode=self.mode.value,
            job=job_id,
            scheduled_at=payload.get("scheduled_at"),
        )
        try:
            with operation_context("restore", job_id=job_id, mode=self.mode.value):
                result = self._restore(job_id)
                self._restore_boot_config()
        except (StorageError, OSError) as error:
            self.audit.error(
                "restore_failed",
                mode=self.mode.value,
                job=job_id,
                error=type(error).__name__,
                reason=str(error),
                path=getattr(error, "path", None) or getattr(error, "filename", None),
                offset=getattr(error, "offset", None),
            )
            raise

        self.intent.clear()
        self.boot_config.discard_saved()
        self.audit.info(
            "restore_finished",
            ok=True,
            mode=self.mode.value,
            job=job_id,
            engine=result.engine.value,
            entries_copied=result.entries_copied,
            entries_deleted=result.entries_deleted,
            bytes=result.bytes_copied,
            seconds=round(result.duration_seconds, 1),
        )
        EventLogger.log_restore_finished(
            self.log, True, self.backup_label, self.active_label
        )
        if self.reboot_after:
            self.audit.info("reboot", mode=self.mode.value)
            reboot()
        return True

    def _restore(self, job_id: str) -> RestoreResult:
        raise NotImplementedError

    def _restore_boot_config(self) -> None:
        if self.boot_config.has_saved_copy():
            self.boot_config.restore_saved()
        elif self.boot_config.points_at(self.recovery_label):
            raise ConfigurationCorruptError(
                str(self.boot_config.saved_path),
                "missing while cmdline.txt selects the recovery partition",
            )


class InBandDispatcher(BaseDispatcher):
    """Tree-sync restore from an early-boot unit on the Active root."""

    mode = DispatchMode.INBAND

    def _restore(self, job_id: str) -> RestoreResult:
        if self.intent.mode() is DispatchMode.RECOVERY:
            self.log.warning(
                "Reset was scheduled for the recovery partition but Active "
                "booted; restoring in-band"
            )
        active, backup = validate_pair(self.active_label, self.backup_label)
        if validate_not_running_root(active):
            self.log.info(f"{active.device_path} is the running root, protecting tool files")
        return tree_restore(
            active,
            backup,
            exclude=settings.get_list("live_paths"),
            reprovision=self_paths(),
            job_id=job_id,
        )


class RecoveryDispatcher(BaseDispatcher):
    """Block-copy restore from the recovery partition."""

    mode = DispatchMode.RECOVERY

    def should_run(self) -> bool:
        # Booting the recovery partition is itself the request
        if not self.intent.exists():
            self.log.warning(
                f"{self.intent.path} is absent, restoring because the recovery "
                "partition was booted"
            )
        return True

    def _resolve_pair(self, partitions: list[Partition]) -> tuple[Partition, Partition]:
        try:
            return validate_pair(
                self.active_label, self.backup_label, partitions=partitions
            )
        except PartitionNotFoundError as error:
            if error.label != self.active_label:
                raise
            # An interrupted block copy leaves Active carrying the backup label
            recorded = self.intent.read().get("active")
            candidates = find_partitions_by_label(self.backup_label, partitions)
            names = [candidate.name for candidate in candidates]
            if len(candidates) != 2 or recorded not in names:
                raise
            self.log.warning(
                f"Active partition carries label '{self.backup_label}' after an "
                f"interrupted copy; using {recorded} recorded at schedule time"
            )
            active = next(c for c in candidates if c.name == recorded)
            backup = next(c for c in candidates if c.name != recorded)
            return active.with_role(PartitionRole.ACTIVE), backup.with_role(
                PartitionRole.BACKUP
            )

    def _restore(self, job_id: str) -> RestoreResult:
        active, backup = self._resolve_pair(list_partitions())
        validate_block_pair(backup, active)
        engine = get_engine(
            EngineKind.BLOCK_COPY,
            block_size=int(settings.get_setting("block_size")),
            job_id=job_id,
        )
        with device_operation(active.name):
            result = engine.restore(backup.device_path, active.device_path)
        if not result.ok:
            raise RestoreIOError(
                f"Restore of {active.device_path} incomplete: "
                f"{result.describe_failure()}",
                path=result.path,
                offset=result.offset,
            )
        relabel_partition(active, self.active_label)
        regenerate_uuid(active)
        with mounted(active.device_path) as active_root:
            repair_fstab(active_root, self.backup_label, self.active_label)
            verify_critical_files(active_root, settings.get_list("critical_files"))
        return result


# ==============================================================================
# External reset
# ==============================================================================


def restore_external(
    device: str, confirm: ConfirmFn, job_id: Optional[str] = None
) -> RestoreResult:
    """Reset a disk attached to this machine, e.g. an SD card in a reader.

    Raises:
        DeviceNotFoundError: ``device`` is not attached
        ValidationError: Labels or backup content are wrong
        MountVerificationError: One of the partitions is this machine's root
        ConfirmationDeclinedError: ``confirm`` returned False
        RestoreIOError: The restore did not complete
    """
    active_label = settings.get_setting("active_label")
    backup_label = settings.get_setting("backup_label")
    active, backup = validate_pair(active_label, backup_label, device=device)
    for partition in (active, backup):
        if validate_not_running_root(partition):
            raise MountVerificationError(partition.name, "/")

    prompt = (
        f"All changes on {active.device_path} ({active_label}) will be replaced "
        f"by {backup.device_path} ({backup_label}). Type 'yes' to continue: "
    )
    if not confirm(prompt):
        raise ConfirmationDeclinedError()

    job_id = job_id or f"restore-{uuid.uuid4().hex[:8]}"
    with operation_context("restore", job_id=job_id, device=device, mode="external"):
        result = tree_restore(
            active,
            backup,
            exclude=settings.get_list("live_paths"),
            reprovision=settings.get_list("reset_tool_paths"),
            job_id=job_id,
        )
    EventLogger.log_restore_finished(
        log, True, backup.device_path, active.device_path
    )
    return result


# ==============================================================================
# Backup refresh
# ==============================================================================


def refresh_backup(
    confirm: ConfirmFn,
    boot_dir: Optional[str | Path] = None,
    job_id: Optional[str] = None,
) -> RestoreResult:
    """Mirror the current Active root onto Backup.

    Whatever Active holds now becomes the state the next factory reset
    restores. Refused while a reset is pending, since that reset was
    confirmed against the old backup.

    Raises:
        AlreadyScheduledError: A factory reset is pending
        ValidationError: Labels are wrong or Active is not a root filesystem
        MountVerificationError: Backup is this machine's root
        ConfirmationDeclinedError: ``confirm`` returned False
        RestoreIOError: The mirror did not complete
    """
    boot_dir = Path(boot_dir) if boot_dir else default_boot_dir()
    intent = IntentStore(boot_dir, settings.get_setting("flag_filename"))
    if intent.exists():
        raise AlreadyScheduledError(str(intent.path))

    active_label = settings.get_setting("active_label")
    backup_label = settings.get_setting("backup_label")
    active, backup = validate_pair(active_label, backup_label)
    if validate_not_running_root(backup):
        raise MountVerificationError(backup.name, "/")

    prompt = (
        f"The backup on {backup.device_path} ({backup_label}) will be replaced "
        f"by the current contents of {active.device_path} ({active_label}). "
        "Type 'yes' to continue: "
    )
    if not confirm(prompt):
        raise ConfirmationDeclinedError()

    audit = AuditTrail(boot_dir, settings.get_setting("audit_log_filename"))
    job_id = job_id or f"backup-{uuid.uuid4().hex[:8]}"
    audit.info("backup_started", job=job_id, source=active.name, target=backup.name)
    try:
        with operation_context("backup", job_id=job_id), mounted(
            active.device_path, read_only=True
        ) as active_root, mounted(backup.device_path) as backup_root:
            validate_backup_tree(
                active_root,
                settings.get_list("required_backup_dirs"),
                device=active.device_path,
            )
            engine = get_engine(EngineKind.TREE_SYNC, job_id=job_id)
            with device_operation(backup.name):
                result = engine.restore(
                    active_root, backup_root, exclude=settings.get_list("live_paths")
                )
            if not result.ok:
                raise RestoreIOError(
                    f"Refresh of {backup.device_path} incomplete: "
                    f"{result.describe_failure()}",
                    path=result.path,
                    offset=result.offset,
                )
    except (StorageError, OSError) as error:
        audit.error(
            "backup_failed",
            job=job_id,
            error=type(error).__name__,
            reason=str(error),
            path=getattr(error, "path", None) or getattr(error, "filename", None),
        )
        raise

    audit.info(
        "backup_finished",
        job=job_id,
        entries_copied=result.entries_copied,
        entries_deleted=result.entries_deleted,
        bytes=result.bytes_copied,
        seconds=round(result.duration_seconds, 1),
    )
    EventLogger.log_restore_finished(log, True, active.device_path, backup.device_path)
    return result
