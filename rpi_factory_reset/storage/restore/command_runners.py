"""Command execution utilities with progress tracking."""

from __future__ import annotations

import codecs
import os
import re
import select
import subprocess

from rpi_factory_reset.logging import LoggerFactory

from .progress import parse_rsync_progress


log = LoggerFactory.for_system()

READ_SIZE = 65536

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def _report_line(line, progress_callback):
    if not line.strip():
        return
    log.trace(f"stdout: {line.strip()}")
    parsed = parse_rsync_progress(line)
    if parsed and progress_callback:
        progress_callback(*parsed)


def run_checked_with_streaming_progress(
    command,
    progress_callback=None,
    refresh_interval=1.0,
):
    """Run a command, feeding parsed stdout progress to ``progress_callback``.

    rsync writes ``--info=progress2`` updates to stdout separated by carriage
    returns. Every parsed update is passed to the callback as
    ``(bytes_copied, percent, bytes_per_second)``. stdout and stderr are
    drained together, so a command that writes a lot to either pipe never
    blocks on the other.

    Raises:
        RuntimeError: If the command exits non-zero
    """
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    stdout_fd = process.stdout.fileno()
    stderr_fd = process.stderr.fileno()
    chunks = {stdout_fd: [], stderr_fd: []}
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""

    open_fds = [stdout_fd, stderr_fd]
    try:
        while open_fds:
            ready, _, _ = select.select(open_fds, [], [], refresh_interval)
            for fd in ready:
                data = os.read(fd, READ_SIZE)
                if not data:
                    open_fds.remove(fd)
                    continue
                chunks[fd].append(data)
                if fd != stdout_fd:
                    continue
                pending += decoder.decode(data)
                *lines, pending = _LINE_BREAK.split(pending)
                for line in lines:
                    _report_line(line, progress_callback)
        _report_line(pending + decoder.decode(b"", final=True), progress_callback)
        process.wait()
    finally:
        process.stdout.close()
        process.stderr.close()

    stdout_data = b"".join(chunks[stdout_fd]).decode("utf-8", errors="replace")
    stderr_output = b"".join(chunks[stderr_fd]).decode("utf-8", errors="replace")
    if stderr_output:
        log.debug(f"stderr: {stderr_output.strip()}")
    if process.returncode != 0:
        message = stderr_output.strip() or stdout_data.strip() or "Command failed"
        raise RuntimeError(
            f"Command failed ({' '.join(command)}) with code {process.returncode}: "
            f"{message}"
        )
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )
