import argparse
import sys
from pathlib import Path

from ssh_imager import __version__
from ssh_imager.app.context import RunContext
from ssh_imager.app.workspace import Terminated, termination_signals
from ssh_imager.config import settings
from ssh_imager.domain.models import RemoteHost, TransferSession
from ssh_imager.exceptions import ImagerError, MissingToolError
from ssh_imager.logging import LoggerFactory, setup_logging
from ssh_imager.services.backup import run_backup
from ssh_imager.services.notify import build_subject, send_log
from ssh_imager.storage.command_runners import check_required_tools
from ssh_imager.storage.loopback import detach_all

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_MISSING_TOOL = 4

EPILOG = """\
The local host needs free space of twice the device size when --shrink is
used. The archive name ends in _<N>GB.zip (shrunk) or _<N>GB.gz, where N is
the original device size in GB.

examples:
  ssh-imager -k ~/.ssh/id_rsa pi@mypi.local
  ssh-imager -p 222 -n mypi -s -m me@example.com pi@mypi.local
"""


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ssh-imager",
        description=(
            "Make a compressed image of a remote Raspberry Pi's block device over ssh, "
            "optionally shrinking its root partition before archiving."
        ),
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("target", metavar="USER@HOST", help="Account and host to image")
    parser.add_argument("-n", "--name", help="Base name of the image files (default: HOST)")
    parser.add_argument("-k", "--key", help="Private ssh key (default: ~/.ssh/id_rsa)")
    parser.add_argument(
        "-m",
        "--mail",
        metavar="RECIPIENT[,RECIPIENT]",
        help="Mail the run log to these recipients when the run ends",
    )
    parser.add_argument("-p", "--port", type=int, help="ssh port on HOST (default: 22)")
    parser.add_argument("-d", "--device", help="Block device on HOST (default: /dev/mmcblk0)")
    parser.add_argument(
        "-s", "--shrink", action="store_true", help="Shrink the root partition and zip the image"
    )
    parser.add_argument(
        "-b",
        "--before",
        action="append",
        default=[],
        metavar="CMD",
        help="Command to run on HOST before imaging (repeatable)",
    )
    parser.add_argument(
        "-a",
        "--after",
        action="append",
        default=[],
        metavar="CMD",
        help="Command to run on HOST after imaging, even if it failed (repeatable)",
    )
    parser.add_argument("--destination", help="Local directory for the image (default: $HOME)")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log everything, including raw tool output")
    parser.add_argument("--log-dir", type=Path, help="Directory for operations.log and debug.log")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def parse_recipients(value):
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def build_session(args):
    """Merge command line options over the saved settings."""
    key = args.key or settings.get_setting("ssh_key")
    port = args.port or settings.get_int("ssh_port", settings.DEFAULT_PORT)
    remote = RemoteHost.from_target(args.target, port=port, key=Path(key) if key else None)
    destination = Path(
        args.destination or settings.get_setting("destination_dir") or Path.home()
    ).expanduser()
    return TransferSession(
        remote=remote,
        device=args.device or settings.get_setting("device", settings.DEFAULT_DEVICE),
        name=args.name or remote.host,
        destination_dir=destination,
        shrink=args.shrink,
        pre_scripts=tuple(args.before),
        post_scripts=tuple(args.after),
        recipients=parse_recipients(args.mail),
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    run_context = RunContext()
    setup_logging(run_context, debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        session = build_session(args)
    except ValueError as error:
        log.error(str(error))
        return EXIT_USAGE

    try:
        check_required_tools()
    except MissingToolError as error:
        log.error(f"ERROR: {error}.")
        return EXIT_MISSING_TOOL

    exit_code = EXIT_OK
    try:
        with termination_signals():
            result = run_backup(session)
        log.info(f"Archive: {result.archive_path}")
    except ImagerError as error:
        log.error(f"Backup FAILED: {error}")
        exit_code = EXIT_FAILED
    except Terminated as signal_exit:
        log.error(f"Backup interrupted: {signal_exit}")
        exit_code = signal_exit.exit_code
    except Exception as error:
        log.exception(f"Backup FAILED with unexpected {type(error).__name__}: {error}")
        exit_code = EXIT_FAILED
    finally:
        detach_all()

    run_context.exit_code = exit_code
    log.info(f"{session.name} backup finished with exit code {run_context.exit_code}")
    if session.recipients:
        subject = build_subject(session.name, session.device)
        send_log(run_context.log_text(), session.recipients, subject)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
