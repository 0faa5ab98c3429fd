"""Command execution utilities for the system tools the pipeline drives."""

import shutil
import subprocess

from ssh_imager.config import settings
from ssh_imager.exceptions import CommandFailedError, MissingToolError
from ssh_imager.logging import LoggerFactory

log = LoggerFactory.for_storage()

REQUIRED_TOOLS = (
    "ssh",
    "zip",
    "gzip",
    "parted",
    "losetup",
    "fsck",
    "e2fsck",
    "resize2fs",
    "truncate",
)


def require_tool(tool):
    """Return the absolute path of ``tool`` or raise MissingToolError."""
    path = shutil.which(tool)
    if not path:
        raise MissingToolError(tool)
    return path


def check_required_tools(tools=REQUIRED_TOOLS):
    """Fail early if any utility the run depends on is missing."""
    for tool in tools:
        require_tool(tool)
    log.debug(f"Required tools present: {', '.join(tools)}")


def privileged_command(tool, *args):
    """Build a command line for a tool that needs root (loop devices, partition tables)."""
    command = [require_tool(tool), *[str(arg) for arg in args]]
    if settings.get_bool("use_sudo", True):
        command.insert(0, "sudo")
    return command


def run_command(command, input_text=None):
    """Run a command and return the CompletedProcess without checking it."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
    )
    if result.returncode != 0:
        log.debug(f"Command exited with code {result.returncode}: {' '.join(command)}")
    return result


def run_checked_command(command, input_text=None):
    """Run a command and raise CommandFailedError if it fails."""
    result = run_command(command, input_text=input_text)
    if result.returncode != 0:
        raise CommandFailedError(command, result.returncode, result.stdout, result.stderr)
    return result.stdout


__all__ = [
    "REQUIRED_TOOLS",
    "check_required_tools",
    "privileged_command",
    "require_tool",
    "run_checked_command",
    "run_command",
]
