"""
Tests for the reset scheduler state machine.

Covers:
- schedule: validation before writing, confirmation, in-band and recovery
  transitions and their on-disk order
- status after each transition and after interrupted transitions
- cancel: exact restoration of cmdline.txt, corrupt saved copy handling
- dispatch mode resolution
"""

import shutil
from unittest.mock import patch

import pytest

from rpi_factory_reset.domain.models import DispatchMode, ResetState
from rpi_factory_reset.reset.scheduler import Scheduler, resolve_dispatch_mode
from rpi_factory_reset.storage.device_lock import device_operation
from rpi_factory_reset.storage.exceptions import (
    AlreadyScheduledError,
    BackupStructureError,
    ConfigurationCorruptError,
    ConfirmationDeclinedError,
    NotScheduledError,
    PartitionNotFoundError,
    RestoreInProgressError,
    ValidationError,
)

from conftest import CMDLINE


def always_yes(_prompt):
    return True


def always_no(_prompt):
    return False


@pytest.fixture
def scheduler(boot_dir, fake_mounted):
    with patch("rpi_factory_reset.reset.scheduler.mounted", fake_mounted):
        yield Scheduler(boot_dir)


def _boot_files(boot_dir):
    return sorted(p.name for p in boot_dir.iterdir())


class TestScheduleInBand:
    def test_creates_flag_only(self, scheduler, boot_dir, mock_lsblk):
        status = scheduler.schedule(always_yes)

        assert status.state is ResetState.SCHEDULED
        assert status.mode is DispatchMode.INBAND
        assert not status.boot_config_modified
        assert _boot_files(boot_dir) == ["cmdline.txt", "factory-reset.log", "recovery_mode"]
        assert (boot_dir / "cmdline.txt").read_bytes() == CMDLINE
        assert scheduler.intent.read()["active"] == "mmcblk0p3"

    def test_backup_mounted_read_only(self, scheduler, fake_mounted, mock_lsblk):
        scheduler.schedule(always_yes)
        assert fake_mounted.calls == [("/dev/mmcblk0p2", True)]

    def test_prompt_names_both_partitions(self, scheduler, mock_lsblk):
        prompts = []

        scheduler.schedule(lambda prompt: prompts.append(prompt) or True)

        assert "/dev/mmcblk0p3" in prompts[0]
        assert "/dev/mmcblk0p2" in prompts[0]
        assert prompts[0].rstrip().endswith("Type 'yes' to continue:")

    def test_audit_records_schedule(self, scheduler, boot_dir, mock_lsblk):
        scheduler.schedule(always_yes)

        log = (boot_dir / "factory-reset.log").read_text()
        assert "reset_scheduled" in log
        assert "mode=inband" in log


class TestScheduleRefusals:
    def test_declined_writes_nothing(self, scheduler, boot_dir, mock_lsblk):
        with pytest.raises(ConfirmationDeclinedError):
            scheduler.schedule(always_no)
        assert _boot_files(boot_dir) == ["cmdline.txt"]
        assert scheduler.status().state is ResetState.IDLE

    def test_already_scheduled(self, scheduler, mock_lsblk):
        scheduler.schedule(always_yes)
        with pytest.raises(AlreadyScheduledError):
            scheduler.schedule(always_yes)

    def test_missing_backup(self, scheduler, boot_dir, mock_lsblk, mock_pi_disk):
        mock_pi_disk["children"][1]["label"] = "data"

        with pytest.raises(PartitionNotFoundError):
            scheduler.schedule(always_yes)
        assert _boot_files(boot_dir) == ["cmdline.txt"]

    def test_backup_not_a_root_filesystem(self, scheduler, boot_dir, backup_tree, mock_lsblk):
        shutil.rmtree(backup_tree / "usr")

        with pytest.raises(BackupStructureError) as exc_info:
            scheduler.schedule(always_yes)
        assert exc_info.value.missing == ["usr"]
        assert isinstance(exc_info.value, ValidationError)
        assert _boot_files(boot_dir) == ["cmdline.txt"]

    def test_confirm_not_called_when_invalid(self, scheduler, mock_lsblk, mock_pi_disk):
        mock_pi_disk["children"][1]["label"] = "data"
        prompts = []

        with pytest.raises(PartitionNotFoundError):
            scheduler.schedule(lambda prompt: prompts.append(prompt) or True)
        assert prompts == []


class TestScheduleRecovery:
    def test_order_and_result(self, scheduler, boot_dir, mock_lsblk_with_recovery):
        status = scheduler.schedule(always_yes)

        assert status.mode is DispatchMode.RECOVERY
        assert status.boot_config_modified
        assert (boot_dir / "cmdline.txt.pre-reset").read_bytes() == CMDLINE
        assert b"root=LABEL=pi-system-recovery" in (boot_dir / "cmdline.txt").read_bytes()

    def test_no_cmdline(self, scheduler, boot_dir, mock_lsblk_with_recovery):
        (boot_dir / "cmdline.txt").unlink()

        with pytest.raises(ConfigurationCorruptError):
            scheduler.schedule(always_yes)
        assert not scheduler.intent.exists()

    def test_interrupted_before_flag(self, scheduler, boot_dir, mock_lsblk_with_recovery):
        # Saved copy written, then power lost before the flag
        (boot_dir / "cmdline.txt.pre-reset").write_bytes(CMDLINE)

        scheduler.schedule(always_yes)

        assert (boot_dir / "cmdline.txt.pre-reset").read_bytes() == CMDLINE

    def test_interrupted_after_rewrite_keeps_saved_copy(
        self, scheduler, boot_dir, mock_lsblk_with_recovery
    ):
        # Flag was deleted by hand after cmdline.txt had been rewritten
        (boot_dir / "cmdline.txt.pre-reset").write_bytes(CMDLINE)
        scheduler.boot_config.point_root_at("pi-system-recovery")

        scheduler.schedule(always_yes)

        assert (boot_dir / "cmdline.txt.pre-reset").read_bytes() == CMDLINE

    def test_pointing_at_recovery_without_copy(
        self, scheduler, boot_dir, mock_lsblk_with_recovery
    ):
        scheduler.boot_config.point_root_at("pi-system-recovery")

        with pytest.raises(ConfigurationCorruptError):
            scheduler.schedule(always_yes)
        assert not scheduler.intent.exists()


class TestStatus:
    def test_idle(self, scheduler):
        status = scheduler.status()
        assert status.state is ResetState.IDLE
        assert status.describe() == ["Factory reset: IDLE"]

    def test_reports_modified_boot_config_when_idle(self, scheduler):
        scheduler.boot_config.point_root_at("pi-system-recovery")
        status = scheduler.status()
        assert status.state is ResetState.IDLE
        assert status.boot_config_modified

    def test_unreadable_payload_still_scheduled(self, scheduler, boot_dir):
        (boot_dir / "recovery_mode").write_bytes(b"")
        status = scheduler.status()
        assert status.state is ResetState.SCHEDULED
        assert status.mode is None


class TestCancel:
    def test_not_scheduled(self, scheduler):
        with pytest.raises(NotScheduledError):
            scheduler.cancel()

    def test_inband(self, scheduler, boot_dir, mock_lsblk):
        scheduler.schedule(always_yes)

        status = scheduler.cancel()

        assert status.state is ResetState.IDLE
        assert _boot_files(boot_dir) == ["cmdline.txt", "factory-reset.log"]

    def test_refused_while_restore_running(self, scheduler, boot_dir, mock_lsblk):
        scheduler.schedule(always_yes)

        with device_operation("mmcblk0p3"):
            with pytest.raises(RestoreInProgressError) as exc_info:
                scheduler.cancel()
            assert "Restore running on mmcblk0p3" in scheduler.status().describe()

        assert exc_info.value.device_name == "mmcblk0p3"
        assert (boot_dir / "recovery_mode").exists()
        assert scheduler.status().restoring is None

    def test_recovery_restores_exact_bytes(self, scheduler, boot_dir, mock_lsblk_with_recovery):
        scheduler.schedule(always_yes)

        status = scheduler.cancel()

        assert status.state is ResetState.IDLE
        assert not status.boot_config_modified
        assert (boot_dir / "cmdline.txt").read_bytes() == CMDLINE
        assert not (boot_dir / "cmdline.txt.pre-reset").exists()

    def test_missing_saved_copy_is_corrupt(self, scheduler, boot_dir, mock_lsblk_with_recovery):
        scheduler.schedule(always_yes)
        (boot_dir / "cmdline.txt.pre-reset").unlink()

        with pytest.raises(ConfigurationCorruptError):
            scheduler.cancel()

        assert scheduler.intent.exists()
        assert "cancel_failed" in (boot_dir / "factory-reset.log").read_text()

    def test_empty_saved_copy_is_corrupt(self, scheduler, boot_dir, mock_lsblk_with_recovery):
        scheduler.schedule(always_yes)
        (boot_dir / "cmdline.txt.pre-reset").write_bytes(b"")

        with pytest.raises(ConfigurationCorruptError):
            scheduler.cancel()
        assert scheduler.intent.exists()

    def test_schedule_again_after_cancel(self, scheduler, mock_lsblk):
        scheduler.schedule(always_yes)
        scheduler.cancel()
        assert scheduler.schedule(always_yes).state is ResetState.SCHEDULED


class TestResolveDispatchMode:
    def test_auto_without_recovery(self, pi_partitions):
        assert resolve_dispatch_mode(pi_partitions) is DispatchMode.INBAND

    def test_auto_with_recovery(self, mock_lsblk_with_recovery):
        from rpi_factory_reset.storage.devices import list_partitions

        assert resolve_dispatch_mode(list_partitions()) is DispatchMode.RECOVERY

    def test_forced_inband(self, mock_lsblk_with_recovery, default_settings):
        from rpi_factory_reset.storage.devices import list_partitions

        default_settings["dispatch_mode"] = "inband"
        assert resolve_dispatch_mode(list_partitions()) is DispatchMode.INBAND

    def test_forced_recovery_without_partition(self, pi_partitions, default_settings):
        default_settings["dispatch_mode"] = "recovery"
        with pytest.raises(PartitionNotFoundError):
            resolve_dispatch_mode(pi_partitions)
