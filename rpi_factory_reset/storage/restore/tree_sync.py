"""File-level mirror of the backup tree onto the active tree.

The engine walks both trees together, one directory at a time, and in the
same pass deletes what the backup lacks and copies what is new or changed.
Every file is written under a temporary name in its target directory and
moved into place with ``os.replace``, so a process that has the old file
open or mapped (including the interpreter running this code) keeps a valid
inode.

Behaviour matches ``rsync -axHAWXS --numeric-ids --delete``:
    - one filesystem: source subtrees on another device are not descended,
      destination mount points are never touched
    - modes, numeric ownership (as root), mtimes, symlinks, hard links,
      device nodes (as root) and extended attributes are preserved
    - unchanged files are detected by size and mtime
    - excluded paths are neither copied nor deleted
"""

from __future__ import annotations

import errno
import os
import stat
import time
import uuid
from pathlib import Path
from typing import Iterable, Optional

from rpi_factory_reset.domain.models import EngineKind, RestoreResult
from rpi_factory_reset.logging import LoggerFactory
from rpi_factory_reset.storage.exceptions import RestoreIOError

from .base import RestoreEngine, normalize_excludes
from .progress import RestoreProgress


TMP_PREFIX = ".rfr-tmp-"
COPY_CHUNK_SIZE = 1024 * 1024

_XATTR_UNSUPPORTED = {errno.ENOTSUP, errno.EOPNOTSUPP, errno.EPERM}


class _SyncState:
    def __init__(self, src_root: Path, dst_root: Path, excluded, progress, log):
        self.src_root = src_root
        self.dst_root = dst_root
        self.excluded = excluded
        self.progress = progress
        self.log = log
        self.src_dev = os.lstat(src_root).st_dev
        self.dst_dev = os.lstat(dst_root).st_dev
        # (src st_dev, src st_ino) -> relative path of the first copy
        self.hardlinks: dict[tuple[int, int], str] = {}
        self.entries_copied = 0
        self.entries_deleted = 0


class TreeSyncEngine(RestoreEngine):
    """Pure-Python tree mirror."""

    kind = EngineKind.TREE_SYNC

    def __init__(self, preserve_owner: Optional[bool] = None, job_id=None):
        if preserve_owner is None:
            preserve_owner = os.geteuid() == 0
        self.preserve_owner = preserve_owner
        self.job_id = job_id

    def restore(self, source, destination, exclude: Iterable[str] = ()) -> RestoreResult:
        log = LoggerFactory.for_restore(self.job_id, engine=self.kind.value)
        src_root = Path(source)
        dst_root = Path(destination)
        started = time.monotonic()
        for root in (src_root, dst_root):
            if not root.is_dir():
                return RestoreResult.partial_failure(
                    self.kind, "not a directory", path=str(root)
                )

        excluded = normalize_excludes(exclude)
        log.info(
            f"Mirroring {src_root} -> {dst_root}"
            f" ({len(excluded)} excluded paths)"
        )
        state = _SyncState(
            src_root, dst_root, excluded, RestoreProgress(log), log
        )
        try:
            self._sync_directory(state, "")
            os.sync()
        except RestoreIOError as error:
            log.error(f"Tree sync aborted: {error}")
            return RestoreResult.partial_failure(
                self.kind,
                str(error),
                path=error.path,
                bytes_copied=state.progress.bytes_copied,
                entries_copied=state.entries_copied,
                entries_deleted=state.entries_deleted,
                duration_seconds=time.monotonic() - started,
            )

        result = RestoreResult.success(
            self.kind,
            bytes_copied=state.progress.bytes_copied,
            entries_copied=state.entries_copied,
            entries_deleted=state.entries_deleted,
            duration_seconds=time.monotonic() - started,
        )
        log.info(
            f"Tree sync complete: {result.entries_copied} copied, "
            f"{result.entries_deleted} deleted, {result.bytes_copied} bytes"
        )
        return result

    # ------------------------------------------------------------------
    # Directory walk
    # ------------------------------------------------------------------

    def _sync_directory(self, state: _SyncState, rel: str) -> None:
        src_dir = state.src_root / rel
        dst_dir = state.dst_root / rel
        src_names = set(self._listdir(src_dir))
        dst_names = set(self._listdir(dst_dir))

        for name in sorted(src_names | dst_names):
            child_rel = f"{rel}/{name}" if rel else name
            if child_rel in state.excluded:
                continue
            if name not in src_names:
                self._delete(state, child_rel)
            else:
                self._sync_entry(state, child_rel)

        self._apply_metadata(src_dir, dst_dir, self._lstat(src_dir))

    def _sync_entry(self, state: _SyncState, rel: str) -> None:
        src_path = state.src_root / rel
        dst_path = state.dst_root / rel
        src_st = self._lstat(src_path)
        dst_st = self._lstat_or_none(dst_path)

        if dst_st is not None and self._is_foreign_mount(state, dst_st):
            state.log.debug(f"Leaving mount point {dst_path} untouched")
            return

        if stat.S_ISDIR(src_st.st_mode):
            if dst_st is not None and not stat.S_ISDIR(dst_st.st_mode):
                self._delete(state, rel)
                dst_st = None
            if dst_st is None:
                self._mkdir(dst_path)
                state.entries_copied += 1
            if src_st.st_dev != state.src_dev:
                # Mount point inside the backup: keep the empty directory only
                self._apply_metadata(src_path, dst_path, src_st)
                return
            self._sync_directory(state, rel)
            return

        if dst_st is not None and stat.S_ISDIR(dst_st.st_mode):
            self._delete(state, rel)
            dst_st = None

        if stat.S_ISLNK(src_st.st_mode):
            self._sync_symlink(state, rel, src_st, dst_st)
        elif stat.S_ISREG(src_st.st_mode):
            self._sync_file(state, rel, src_st, dst_st)
        else:
            self._sync_special(state, rel, src_st, dst_st)

    # ------------------------------------------------------------------
    # Entry kinds
    # ------------------------------------------------------------------

    def _sync_file(self, state, rel, src_st, dst_st) -> None:
        src_path = state.src_root / rel
        dst_path = state.dst_root / rel

        if src_st.st_nlink > 1:
            key = (src_st.st_dev, src_st.st_ino)
            first = state.hardlinks.get(key)
            if first is not None:
                self._link(state, first, rel, dst_st)
                return
            state.hardlinks[key] = rel

        if (
            dst_st is not None
            and stat.S_ISREG(dst_st.st_mode)
            and dst_st.st_size == src_st.st_size
            and int(dst_st.st_mtime) == int(src_st.st_mtime)
        ):
            if self._metadata_differs(src_st, dst_st):
                self._apply_metadata(src_path, dst_path, src_st)
            return

        tmp_path = self._tmp_path(dst_path)
        try:
            with open(src_path, "rb") as src_file, open(tmp_path, "xb") as tmp_file:
                while True:
                    chunk = src_file.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    tmp_file.write(chunk)
                    state.progress.advance(len(chunk))
            self._apply_metadata(src_path, tmp_path, src_st)
            os.replace(tmp_path, dst_path)
        except OSError as error:
            self._discard(tmp_path)
            raise RestoreIOError(
                f"Failed to copy {rel}: {error.strerror or error}",
                path=str(dst_path),
            ) from error
        state.entries_copied += 1
        state.log.trace(f"Copied {rel}")

    def _sync_symlink(self, state, rel, src_st, dst_st) -> None:
        src_path = state.src_root / rel
        dst_path = state.dst_root / rel
        try:
            target = os.readlink(src_path)
        except OSError as error:
            raise RestoreIOError(
                f"Failed to read link {rel}: {error.strerror or error}",
                path=str(src_path),
            ) from error

        if dst_st is not None and stat.S_ISLNK(dst_st.st_mode):
            try:
                if os.readlink(dst_path) == target:
                    return
            except OSError as error:
                raise RestoreIOError(
                    f"Failed to read link {rel}: {error.strerror or error}",
                    path=str(dst_path),
                ) from error

        tmp_path = self._tmp_path(dst_path)
        try:
            os.symlink(target, tmp_path)
            self._apply_metadata(src_path, tmp_path, src_st)
            os.replace(tmp_path, dst_path)
        except OSError as error:
            self._discard(tmp_path)
            raise RestoreIOError(
                f"Failed to create link {rel}: {error.strerror or error}",
                path=str(dst_path),
            ) from error
        state.entries_copied += 1

    def _sync_special(self, state, rel, src_st, dst_st) -> None:
        dst_path = state.dst_root / rel
        if not self.preserve_owner:
            state.log.debug(f"Skipping special file {rel} (not running as root)")
            return
        if (
            dst_st is not None
            and stat.S_IFMT(dst_st.st_mode) == stat.S_IFMT(src_st.st_mode)
            and dst_st.st_rdev == src_st.st_rdev
        ):
            if self._metadata_differs(src_st, dst_st):
                self._apply_metadata(state.src_root / rel, dst_path, src_st)
            return

        tmp_path = self._tmp_path(dst_path)
        try:
            os.mknod(tmp_path, src_st.st_mode, src_st.st_rdev)
            self._apply_metadata(state.src_root / rel, tmp_path, src_st)
            os.replace(tmp_path, dst_path)
        except OSError as error:
            self._discard(tmp_path)
            raise RestoreIOError(
                f"Failed to create special file {rel}: {error.strerror or error}",
                path=str(dst_path),
            ) from error
        state.entries_copied += 1

    def _link(self, state, first_rel: str, rel: str, dst_st) -> None:
        first_path = state.dst_root / first_rel
        dst_path = state.dst_root / rel
        first_st = self._lstat(first_path)
        if (
            dst_st is not None
            and dst_st.st_dev == first_st.st_dev
            and dst_st.st_ino == first_st.st_ino
        ):
            return
        tmp_path = self._tmp_path(dst_path)
        try:
            os.link(first_path, tmp_path)
            os.replace(tmp_path, dst_path)
        except OSError as error:
            self._discard(tmp_path)
            raise RestoreIOError(
                f"Failed to hard link {rel} to {first_rel}: {error.strerror or error}",
                path=str(dst_path),
            ) from error
        state.entries_copied += 1

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _delete(self, state: _SyncState, rel: str) -> None:
        """Remove a destination entry, never crossing into another filesystem."""
        path = state.dst_root / rel
        st = self._lstat_or_none(path)
        if st is None:
            return
        if self._is_foreign_mount(state, st):
            state.log.debug(f"Not deleting mount point {path}")
            return

        if stat.S_ISDIR(st.st_mode):
            keep = False
            for name in self._listdir(path):
                child_rel = f"{rel}/{name}"
                if child_rel in state.excluded or self._has_excluded_below(
                    state, child_rel
                ):
                    keep = True
                    if child_rel in state.excluded:
                        continue
                self._delete(state, child_rel)
            if keep:
                state.log.warning(f"Keeping {rel}: it contains excluded paths")
                return
            try:
                os.rmdir(path)
            except OSError as error:
                raise RestoreIOError(
                    f"Failed to remove directory {rel}: {error.strerror or error}",
                    path=str(path),
                ) from error
        else:
            try:
                os.unlink(path)
            except OSError as error:
                raise RestoreIOError(
                    f"Failed to remove {rel}: {error.strerror or error}",
                    path=str(path),
                ) from error
        state.entries_deleted += 1
        state.log.trace(f"Deleted {rel}")

    @staticmethod
    def _has_excluded_below(state: _SyncState, rel: str) -> bool:
        prefix = rel + "/"
        return any(path.startswith(prefix) for path in state.excluded)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _metadata_differs(self, src_st, dst_st) -> bool:
        if stat.S_IMODE(src_st.st_mode) != stat.S_IMODE(dst_st.st_mode):
            return True
        if self.preserve_owner and (
            src_st.st_uid != dst_st.st_uid or src_st.st_gid != dst_st.st_gid
        ):
            return True
        return False

    def _apply_metadata(self, src_path: Path, dst_path: Path, src_st) -> None:
        is_link = stat.S_ISLNK(src_st.st_mode)
        try:
            # chown clears setuid bits and file capabilities; it must run first
            if self.preserve_owner:
                os.lchown(dst_path, src_st.st_uid, src_st.st_gid)
            if not is_link:
                os.chmod(dst_path, stat.S_IMODE(src_st.st_mode))
            if self.preserve_owner:
                self._copy_xattrs(src_path, dst_path)
            if not is_link or os.utime in os.supports_follow_symlinks:
                os.utime(
                    dst_path,
                    ns=(src_st.st_atime_ns, src_st.st_mtime_ns),
                    follow_symlinks=False,
                )
        except OSError as error:
            raise RestoreIOError(
                f"Failed to set metadata on {dst_path}: {error.strerror or error}",
                path=str(dst_path),
            ) from error

    @staticmethod
    def _copy_xattrs(src_path: Path, dst_path: Path) -> None:
        try:
            names = os.listxattr(src_path, follow_symlinks=False)
        except OSError as error:
            if error.errno in _XATTR_UNSUPPORTED:
                return
            raise
        for name in names:
            try:
                value = os.getxattr(src_path, name, follow_symlinks=False)
                os.setxattr(dst_path, name, value, follow_symlinks=False)
            except OSError as error:
                if error.errno not in _XATTR_UNSUPPORTED:
                    raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_foreign_mount(state: _SyncState, dst_st) -> bool:
        return stat.S_ISDIR(dst_st.st_mode) and dst_st.st_dev != state.dst_dev

    @staticmethod
    def _tmp_path(dst_path: Path) -> Path:
        return dst_path.parent / f"{TMP_PREFIX}{uuid.uuid4().hex[:12]}"

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass

    @staticmethod
    def _mkdir(path: Path) -> None:
        try:
            os.mkdir(path, 0o700)
        except OSError as error:
            raise RestoreIOError(
                f"Failed to create directory {path}: {error.strerror or error}",
                path=str(path),
            ) from error

    @staticmethod
    def _listdir(path: Path) -> list[str]:
        try:
            return os.listdir(path)
        except OSError as error:
            raise RestoreIOError(
                f"Failed to list {path}: {error.strerror or error}", path=str(path)
            ) from error

    @staticmethod
    def _lstat(path: Path) -> os.stat_result:
        try:
            return os.lstat(path)
        except OSError as error:
            raise RestoreIOError(
                f"Failed to stat {path}: {error.strerror or error}", path=str(path)
            ) from error

    @staticmethod
    def _lstat_or_none(path: Path) -> Optional[os.stat_result]:
        try:
            return os.lstat(path)
        except FileNotFoundError:
            return None
        except OSError as error:
            raise RestoreIOError(
                f"Failed to stat {path}: {error.strerror or error}", path=str(path)
            ) from error
