import argparse
import json
import os
import subprocess
import sys
from pathlib import Path

from rpi_factory_reset import __version__
from rpi_factory_reset.config import settings
from rpi_factory_reset.logging import LoggerFactory, setup_logging
from rpi_factory_reset.reset.audit import AuditTrail
from rpi_factory_reset.reset.dispatcher import (
    InBandDispatcher,
    RecoveryDispatcher,
    refresh_backup,
    restore_external,
)
from rpi_factory_reset.reset.scheduler import Scheduler, default_boot_dir
from rpi_factory_reset.reset.systemd import DEFAULT_EXECUTABLE, install_unit
from rpi_factory_reset.storage.exceptions import (
    ConfigurationCorruptError,
    ConfirmationDeclinedError,
    StorageError,
)


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CORRUPT = 2

log = LoggerFactory.for_system()


def prompt_confirm(prompt):
    try:
        answer = input(prompt)
    except EOFError:
        return False
    return answer.strip().lower() == "yes"


def make_confirm(assume_yes):
    if assume_yes:
        return lambda _prompt: True
    return prompt_confirm


def print_status(status):
    for line in status.describe():
        print(line)


def _error_exit_code(error):
    if isinstance(error, ConfigurationCorruptError):
        return EXIT_CORRUPT
    return EXIT_FAILURE


def cmd_schedule(args):
    scheduler = Scheduler(args.boot_dir)
    try:
        status = scheduler.schedule(make_confirm(args.yes))
    except ConfirmationDeclinedError as error:
        print(str(error))
        return EXIT_FAILURE
    except StorageError as error:
        log.error(f"Cannot schedule factory reset: {error}")
        return _error_exit_code(error)
    print_status(status)
    print("Reboot to start the factory reset.")
    return EXIT_OK


def cmd_status(args):
    print_status(Scheduler(args.boot_dir).status())
    return EXIT_OK


def cmd_cancel(args):
    scheduler = Scheduler(args.boot_dir)
    try:
        status = scheduler.cancel()
    except StorageError as error:
        log.error(f"Cannot cancel factory reset: {error}")
        return _error_exit_code(error)
    print_status(status)
    return EXIT_OK


def _run_dispatcher(dispatcher):
    try:
        dispatcher.run()
    except (StorageError, OSError) as error:
        log.critical(f"Factory reset failed, reset remains scheduled: {error}")
        return _error_exit_code(error)
    return EXIT_OK


def cmd_dispatch(args):
    return _run_dispatcher(
        InBandDispatcher(args.boot_dir, reboot_after=args.reboot)
    )


def cmd_recover(args):
    reboot_after = True if args.reboot is None else args.reboot
    return _run_dispatcher(
        RecoveryDispatcher(args.boot_dir, reboot_after=reboot_after)
    )


def cmd_restore_external(args):
    if os.geteuid() != 0:
        log.error("restore-external must be run as root")
        return EXIT_FAILURE
    try:
        result = restore_external(args.device, make_confirm(args.yes))
    except ConfirmationDeclinedError as error:
        print(str(error))
        return EXIT_FAILURE
    except (StorageError, OSError) as error:
        log.error(f"External reset of {args.device} failed: {error}")
        return _error_exit_code(error)
    print(
        f"Reset of {args.device} complete: {result.entries_copied} entries copied, "
        f"{result.entries_deleted} deleted. It is safe to boot it now."
    )
    return EXIT_OK


def cmd_backup(args):
    if os.geteuid() != 0:
        log.error("backup must be run as root")
        return EXIT_FAILURE
    try:
        result = refresh_backup(make_confirm(args.yes), args.boot_dir)
    except ConfirmationDeclinedError as error:
        print(str(error))
        return EXIT_FAILURE
    except (StorageError, OSError) as error:
        log.error(f"Backup refresh failed: {error}")
        return _error_exit_code(error)
    print(
        f"Backup refreshed: {result.entries_copied} entries copied, "
        f"{result.entries_deleted} deleted."
    )
    return EXIT_OK


def cmd_install_service(args):
    boot_dir = Path(args.boot_dir) if args.boot_dir else default_boot_dir()
    flag_path = boot_dir / settings.get_setting("flag_filename")
    try:
        unit_path = install_unit(
            flag_path,
            executable=args.executable,
            unit_dir=Path(args.unit_dir),
            enable=not args.no_enable,
        )
    except OSError as error:
        log.error(f"Cannot install service: {error}")
        return EXIT_FAILURE
    except subprocess.CalledProcessError as error:
        log.error(f"systemctl failed: {error}")
        return EXIT_FAILURE
    print(f"Installed {unit_path}")
    return EXIT_OK


def _parse_value(text):
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def cmd_config(args):
    if args.key is None:
        for key in sorted(settings.settings_store.values):
            print(f"{key} = {json.dumps(settings.get_setting(key))}")
        return EXIT_OK
    if args.key not in settings.DEFAULT_SETTINGS:
        log.error(f"Unknown setting: {args.key}")
        return EXIT_FAILURE
    if args.value is not None:
        try:
            settings.set_setting(args.key, _parse_value(args.value), args.settings)
        except OSError as error:
            log.error(f"Cannot save settings: {error}")
            return EXIT_FAILURE
    print(f"{args.key} = {json.dumps(settings.get_setting(args.key))}")
    return EXIT_OK


def cmd_history(args):
    boot_dir = Path(args.boot_dir) if args.boot_dir else default_boot_dir()
    trail = AuditTrail(boot_dir, settings.get_setting("audit_log_filename"))
    lines = trail.tail(args.lines)
    if not lines:
        print("No factory reset history")
    for line in lines:
        print(line)
    return EXIT_OK


def build_parser():
    parser = argparse.ArgumentParser(
        prog="rpi-factory-reset",
        description="Schedule, run and cancel a factory reset of the root filesystem",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable per-file trace output")
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Do not ask for confirmation"
    )
    parser.add_argument("--boot-dir", help="Mounted boot partition (default from settings)")
    parser.add_argument("--settings", type=Path, help="Settings JSON file")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    subparsers = parser.add_subparsers(dest="command", required=True)

    schedule = subparsers.add_parser("schedule", help="Reset to the backup on next boot")
    schedule.add_argument(
        "-y",
        "--yes",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Same as the global --yes",
    )
    schedule.set_defaults(func=cmd_schedule)

    status = subparsers.add_parser("status", help="Show whether a reset is pending")
    status.set_defaults(func=cmd_status)

    cancel = subparsers.add_parser("cancel", help="Cancel a pending reset")
    cancel.set_defaults(func=cmd_cancel)

    for name, func, help_text in (
        ("dispatch", cmd_dispatch, "Run a pending reset in-band (early boot unit)"),
        ("recover", cmd_recover, "Run the reset from the recovery partition"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        reboot_group = sub.add_mutually_exclusive_group()
        reboot_group.add_argument("--reboot", dest="reboot", action="store_true", default=None)
        reboot_group.add_argument("--no-reboot", dest="reboot", action="store_false")
        sub.set_defaults(func=func)

    external = subparsers.add_parser(
        "restore-external", help="Reset a disk attached to this machine"
    )
    external.add_argument("device", help="Disk to reset, e.g. /dev/sdb")
    external.add_argument(
        "-y",
        "--yes",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Same as the global --yes",
    )
    external.set_defaults(func=cmd_restore_external)

    backup = subparsers.add_parser(
        "backup", help="Make the current root the new factory reset backup"
    )
    backup.add_argument(
        "-y",
        "--yes",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Same as the global --yes",
    )
    backup.set_defaults(func=cmd_backup)

    service = subparsers.add_parser("install-service", help="Install the early boot unit")
    service.add_argument("--executable", default=DEFAULT_EXECUTABLE)
    service.add_argument("--unit-dir", default="/etc/systemd/system")
    service.add_argument("--no-enable", action="store_true", help="Only write the unit file")
    service.set_defaults(func=cmd_install_service)

    config = subparsers.add_parser("config", help="Show or change a setting")
    config.add_argument("key", nargs="?", help="Setting name; all settings when omitted")
    config.add_argument("value", nargs="?", help="New value, JSON or a plain string")
    config.set_defaults(func=cmd_config)

    history = subparsers.add_parser("history", help="Show the reset audit trail")
    history.add_argument("-n", "--lines", type=int, default=20)
    history.set_defaults(func=cmd_history)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    if args.settings:
        settings.load_settings(args.settings)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
