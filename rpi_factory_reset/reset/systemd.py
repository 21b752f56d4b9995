"""systemd integration for the in-band dispatcher and for rebooting."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Optional

from rpi_factory_reset.logging import LoggerFactory
from rpi_factory_reset.storage.devices import run_command


log = LoggerFactory.for_system()

UNIT_NAME = "rpi-factory-reset.service"
DEFAULT_UNIT_DIR = Path("/etc/systemd/system")
DEFAULT_EXECUTABLE = "/usr/local/bin/rpi-factory-reset"

UNIT_TEMPLATE = """\
[Unit]
Description=Restore the root filesystem from the factory backup
DefaultDependencies=no
After=local-fs.target
Before=sysinit.target basic.target shutdown.target
Conflicts=shutdown.target
ConditionPathExists={flag_path}
OnFailure=emergency.target
OnFailureJobMode=replace-irreversibly

[Service]
Type=oneshot
ExecStart={executable} dispatch
RemainAfterExit=yes
TimeoutStartSec=infinity
StandardOutput=journal+console
StandardError=journal+console

[Install]
WantedBy=sysinit.target
"""


def render_unit(flag_path: str | Path, executable: str = DEFAULT_EXECUTABLE) -> str:
    return UNIT_TEMPLATE.format(flag_path=flag_path, executable=executable)


def install_unit(
    flag_path: str | Path,
    executable: str = DEFAULT_EXECUTABLE,
    unit_dir: Path = DEFAULT_UNIT_DIR,
    enable: bool = True,
) -> Path:
    """Write the unit file and optionally enable it.

    Raises:
        OSError: If the unit file cannot be written
        subprocess.CalledProcessError: If systemctl fails
    """
    unit_dir.mkdir(parents=True, exist_ok=True)
    unit_path = unit_dir / UNIT_NAME
    unit_path.write_text(render_unit(flag_path, executable), encoding="utf-8")
    log.info(f"Wrote {unit_path}")
    if enable:
        run_command(["systemctl", "daemon-reload"])
        run_command(["systemctl", "enable", UNIT_NAME])
        log.info(f"Enabled {UNIT_NAME}")
    return unit_path


def reboot_command() -> list[str]:
    if shutil.which("systemctl"):
        return ["systemctl", "reboot"]
    return ["reboot"]


def reboot(command: Optional[list[str]] = None) -> None:
    """Flush buffers and ask the init system to reboot."""
    command = command or reboot_command()
    run_command(["sync"], check=False)
    log.info(f"Rebooting: {' '.join(command)}")
    try:
        run_command(command)
    except (subprocess.CalledProcessError, OSError) as error:
        log.error(f"Reboot request failed: {error}")
        raise
