"""
Tests for the pure-Python tree mirror.

Covers:
- Mirroring adds, updates and deletes in one pass
- Excluded paths are neither copied nor deleted
- Files replaced by rename, so open handles keep the old inode
- Symlinks, hard links, modes and mtimes
- Foreign mount points on the destination are left alone
- I/O failure yields a partial failure and leaves no temporary files
"""

import os
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from rpi_factory_reset.domain.models import EngineKind
from rpi_factory_reset.storage.restore import (
    RsyncTreeSyncEngine,
    TreeSyncEngine,
    get_engine,
    normalize_excludes,
)
from rpi_factory_reset.storage.restore.block_copy import BlockCopyEngine
from rpi_factory_reset.storage.restore.tree_sync import TMP_PREFIX
from conftest import OLD_MTIME, snapshot, write_file


@pytest.fixture
def engine():
    return TreeSyncEngine(preserve_owner=False, job_id="test")


def _tmp_leftovers(root: Path):
    return [
        os.path.join(current, name)
        for current, dirnames, filenames in os.walk(root)
        for name in dirnames + filenames
        if name.startswith(TMP_PREFIX)
    ]


class TestMirror:
    def test_active_matches_backup(self, engine, backup_tree, active_tree):
        result = engine.restore(backup_tree, active_tree)

        assert result.ok
        assert result.engine is EngineKind.TREE_SYNC
        assert snapshot(active_tree) == snapshot(backup_tree)

    def test_counts(self, engine, backup_tree, active_tree):
        result = engine.restore(backup_tree, active_tree)

        assert result.entries_copied > 0
        # home/pi/notes.txt, var/lib/app/cache.db, proc/live, tmp/session
        assert result.entries_deleted == 4
        assert result.bytes_copied > 0

    def test_into_empty_destination(self, engine, backup_tree, tmp_path):
        destination = tmp_path / "empty"
        destination.mkdir()

        assert engine.restore(backup_tree, destination).ok
        assert snapshot(destination) == snapshot(backup_tree)

    def test_second_run_copies_nothing(self, engine, backup_tree, active_tree):
        engine.restore(backup_tree, active_tree)

        result = engine.restore(backup_tree, active_tree)

        assert result.ok
        assert result.entries_copied == 0
        assert result.entries_deleted == 0

    def test_preserves_mtime_and_mode(self, engine, backup_tree, active_tree):
        engine.restore(backup_tree, active_tree)

        hello = active_tree / "usr" / "bin" / "hello"
        assert int(hello.stat().st_mtime) == OLD_MTIME
        assert hello.stat().st_mode & 0o777 == 0o755

    def test_mode_only_change_is_applied(self, engine, backup_tree, active_tree):
        engine.restore(backup_tree, active_tree)
        os.chmod(active_tree / "etc" / "hostname", 0o600)

        engine.restore(backup_tree, active_tree)

        assert (active_tree / "etc" / "hostname").stat().st_mode & 0o777 == (
            (backup_tree / "etc" / "hostname").stat().st_mode & 0o777
        )

    def test_type_changes(self, engine, backup_tree, active_tree):
        # A directory where the backup has a file, and the reverse
        (active_tree / "etc" / "hostname").unlink()
        (active_tree / "etc" / "hostname").mkdir()
        write_file(active_tree / "etc" / "hostname", "inner", "x")
        shutil.rmtree(active_tree / "home")
        write_file(active_tree, "home", "not a directory")

        assert engine.restore(backup_tree, active_tree).ok
        assert snapshot(active_tree) == snapshot(backup_tree)

    def test_source_not_a_directory(self, engine, tmp_path, active_tree):
        result = engine.restore(tmp_path / "absent", active_tree)

        assert not result.ok
        assert result.path == str(tmp_path / "absent")


class TestExcludes:
    def test_excluded_paths_untouched(self, engine, backup_tree, active_tree):
        result = engine.restore(backup_tree, active_tree, exclude=["/proc", "/tmp/"])

        assert result.ok
        assert (active_tree / "proc" / "live").read_text() == "kernel state"
        assert (active_tree / "tmp" / "session").read_text() == "scratch"
        assert snapshot(active_tree, ignore=("proc", "tmp")) == snapshot(
            backup_tree, ignore=("proc", "tmp")
        )

    def test_excluded_file_not_copied(self, engine, backup_tree, active_tree):
        tool = "usr/local/bin/rpi-factory-reset"

        engine.restore(backup_tree, active_tree, exclude=["/" + tool])

        assert (active_tree / tool).read_text() == "#!/bin/sh\n# v2\n"

    def test_excluded_path_missing_from_backup_survives(self, engine, backup_tree, active_tree):
        write_file(active_tree, "opt/tool/run.py", "print('hi')")
        write_file(active_tree, "opt/other.txt", "stale")

        result = engine.restore(backup_tree, active_tree, exclude=["/opt/tool"])

        assert result.ok
        assert (active_tree / "opt" / "tool" / "run.py").exists()
        assert not (active_tree / "opt" / "other.txt").exists()

    def test_normalize_excludes(self):
        assert normalize_excludes(["/proc", "tmp/", "/usr/../run", "/", ""]) == frozenset(
            {"proc", "tmp", "run"}
        )


class TestOpenFiles:
    def test_open_file_keeps_old_content(self, engine, backup_tree, active_tree):
        with open(active_tree / "usr" / "bin" / "hello", "rb") as handle:
            before = os.fstat(handle.fileno()).st_ino

            engine.restore(backup_tree, active_tree)

            assert handle.read() == b"#!/bin/sh\necho modified\n"
        after = (active_tree / "usr" / "bin" / "hello").stat().st_ino
        assert after != before
        assert (active_tree / "usr" / "bin" / "hello").read_bytes() == (
            b"#!/bin/sh\necho hello\n"
        )


class TestLinks:
    def test_symlink_recreated(self, engine, backup_tree, active_tree):
        os.symlink("elsewhere", active_tree / "usr" / "bin" / "hi")

        engine.restore(backup_tree, active_tree)

        assert os.readlink(active_tree / "usr" / "bin" / "hi") == "hello"

    def test_dangling_symlink_copied(self, engine, backup_tree, active_tree):
        os.symlink("/nonexistent/target", backup_tree / "etc" / "localtime")

        assert engine.restore(backup_tree, active_tree).ok
        assert os.readlink(active_tree / "etc" / "localtime") == "/nonexistent/target"

    def test_hard_links_preserved(self, engine, backup_tree, active_tree):
        os.link(backup_tree / "usr" / "bin" / "hello", backup_tree / "usr" / "bin" / "hello2")

        assert engine.restore(backup_tree, active_tree).ok

        first = (active_tree / "usr" / "bin" / "hello").stat()
        second = (active_tree / "usr" / "bin" / "hello2").stat()
        assert first.st_ino == second.st_ino
        assert first.st_nlink == 2


class TestMountPoints:
    def test_foreign_mount_on_destination_untouched(self, engine, backup_tree, active_tree):
        mountpoint = active_tree / "home" / "pi"
        real_lstat = os.lstat
        dst_dev = real_lstat(active_tree).st_dev

        def fake_lstat(path, *args, **kwargs):
            st = real_lstat(path, *args, **kwargs)
            if isinstance(path, (str, os.PathLike)) and Path(path) == mountpoint:
                values = list(st)
                values[2] = dst_dev + 1  # st_dev
                return os.stat_result(values)
            return st

        with patch("rpi_factory_reset.storage.restore.tree_sync.os.lstat", side_effect=fake_lstat):
            result = engine.restore(backup_tree, active_tree)

        assert result.ok
        assert (mountpoint / "notes.txt").read_text() == "remember me\n"


class TestFailure:
    def test_replace_failure_is_partial(self, engine, backup_tree, active_tree):
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(dst).endswith("passwd"):
                raise PermissionError(13, "Permission denied")
            return real_replace(src, dst)

        with patch(
            "rpi_factory_reset.storage.restore.tree_sync.os.replace",
            side_effect=failing_replace,
        ):
            result = engine.restore(backup_tree, active_tree)

        assert not result.ok
        assert result.path == str(active_tree / "etc" / "passwd")
        assert "Permission denied" in result.reason
        assert _tmp_leftovers(active_tree) == []

    def test_unreadable_source_is_partial(self, engine, backup_tree, active_tree):
        real_open = open
        target = str(backup_tree / "var" / "lib" / "app" / "state.json")

        def failing_open(path, *args, **kwargs):
            if str(path) == target:
                raise OSError(5, "Input/output error")
            return real_open(path, *args, **kwargs)

        with patch("builtins.open", side_effect=failing_open):
            result = engine.restore(backup_tree, active_tree)

        assert not result.ok
        assert result.path == str(active_tree / "var" / "lib" / "app" / "state.json")
        assert _tmp_leftovers(active_tree) == []


class TestGetEngine:
    def test_block_copy(self):
        engine = get_engine(EngineKind.BLOCK_COPY, block_size=512)
        assert isinstance(engine, BlockCopyEngine)
        assert engine.block_size == 512

    def test_python_default(self):
        assert isinstance(get_engine(EngineKind.TREE_SYNC), TreeSyncEngine)

    def test_backend_from_settings(self, default_settings):
        default_settings["tree_sync_backend"] = "rsync"
        assert isinstance(get_engine(EngineKind.TREE_SYNC), RsyncTreeSyncEngine)

    def test_explicit_backend_wins(self, default_settings):
        default_settings["tree_sync_backend"] = "rsync"
        engine = get_engine(EngineKind.TREE_SYNC, backend="python")
        assert isinstance(engine, TreeSyncEngine)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            get_engine(EngineKind.TREE_SYNC, backend="cp")
