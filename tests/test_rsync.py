"""Tests for the rsync-backed tree mirror."""

from unittest.mock import patch

from rpi_factory_reset.domain.models import EngineKind
from rpi_factory_reset.storage.restore.rsync import (
    RSYNC_FLAGS,
    RsyncTreeSyncEngine,
    build_rsync_command,
)


class TestBuildRsyncCommand:
    def test_flags_and_trailing_slashes(self):
        command = build_rsync_command("/mnt/backup", "/mnt/active/")

        assert command[0] == "rsync"
        assert command[1:5] == RSYNC_FLAGS
        assert command[-2:] == ["/mnt/backup/", "/mnt/active/"]

    def test_excludes_are_anchored(self):
        command = build_rsync_command(
            "/mnt/backup", "/", exclude=["/tmp", "proc/", "/usr/local/bin/rpi-factory-reset"]
        )

        assert "--exclude=/proc" in command
        assert "--exclude=/tmp" in command
        assert "--exclude=/usr/local/bin/rpi-factory-reset" in command

    def test_delete_and_one_filesystem(self):
        command = build_rsync_command("/a", "/b")
        assert "--delete" in command
        assert "-axHAWXS" in command
        assert "--numeric-ids" in command


class TestRsyncTreeSyncEngine:
    @patch("rpi_factory_reset.storage.restore.rsync.run_checked_with_streaming_progress")
    def test_success_reports_progress(self, mock_run):
        def fake_run(command, progress_callback=None):
            progress_callback(1048576, 50.0, 2097152.0)
            progress_callback(2097152, 100.0, 2097152.0)

        mock_run.side_effect = fake_run

        result = RsyncTreeSyncEngine(job_id="t").restore("/mnt/backup", "/mnt/active", ["/proc"])

        assert result.ok
        assert result.engine is EngineKind.TREE_SYNC
        assert result.bytes_copied == 2097152
        command = mock_run.call_args[0][0]
        assert "--exclude=/proc" in command

    @patch("rpi_factory_reset.storage.restore.rsync.run_checked_with_streaming_progress")
    def test_failure_extracts_path(self, mock_run):
        mock_run.side_effect = RuntimeError(
            'Command failed (rsync ...) with code 23: rsync: [receiver] mkstemp '
            '"/mnt/active/etc/.shadow.XXXX" failed: Read-only file system (30)'
        )

        result = RsyncTreeSyncEngine().restore("/mnt/backup", "/mnt/active")

        assert not result.ok
        assert result.path == "/mnt/active/etc/.shadow.XXXX"
        assert "code 23" in result.reason

    @patch("rpi_factory_reset.storage.restore.rsync.run_checked_with_streaming_progress")
    def test_missing_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError(2, "No such file or directory", "rsync")

        result = RsyncTreeSyncEngine().restore("/mnt/backup", "/mnt/active")

        assert not result.ok
        assert result.path == "/mnt/active"
