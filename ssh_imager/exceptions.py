"""Custom exceptions for imaging, transfer and shrink operations.

This module defines a hierarchy of exceptions so the CLI can decide exit codes
and cleanup from the exception type alone, and so log messages carry context.

Exception Hierarchy:
    ImagerError (base)
        ├── ValidationError
        │   ├── DeviceSizeError
        │   ├── DestinationError
        │   └── InsufficientSpaceError
        ├── TransferError
        │   └── EmptyCaptureError
        ├── RemoteScriptError
        ├── CommandError
        │   ├── CommandFailedError
        │   └── MissingToolError
        ├── ParseError
        ├── LoopbackError
        │   ├── AttachError
        │   └── DetachError
        ├── ShrinkError
        │   ├── IntegrityError
        │   ├── RepairError
        │   ├── PrepareExhaustedError
        │   ├── ResizeError
        │   ├── ResizeExhaustedError
        │   ├── PartitionTableError
        │   └── TruncateError
        └── ArchiveError

Usage:
    from ssh_imager.exceptions import InsufficientSpaceError

    try:
        run_backup(session)
    except InsufficientSpaceError as e:
        log.error(f"Not enough space: {e}")
"""

from __future__ import annotations

from typing import Optional, Sequence


class ImagerError(Exception):
    """Base exception for all ssh-imager errors."""


class ValidationError(ImagerError):
    """Preflight validation failed before any remote data moved."""


class DeviceSizeError(ValidationError):
    """The remote size query returned something that is not a byte count."""

    def __init__(self, device: str, raw_value: str):
        self.device = device
        self.raw_value = raw_value
        super().__init__(
            f"Unable to determine size of {device}: got {raw_value!r}"
        )


class DestinationError(ValidationError):
    """The local destination directory cannot be inspected."""

    def __init__(self, directory: str, reason: str):
        self.directory = directory
        self.reason = reason
        super().__init__(f"Cannot use {directory} as the destination: {reason}")


class InsufficientSpaceError(ValidationError):
    """Not enough free space on the local host for the capture."""

    def __init__(self, directory: str, required_bytes: int, available_bytes: int):
        self.directory = directory
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"At least {required_bytes} bytes are needed in {directory}, "
            f"only {available_bytes} bytes are available"
        )


class TransferError(ImagerError):
    """Streaming the remote device image to the local host failed."""

    def __init__(self, message: str, destination: Optional[str] = None):
        self.destination = destination
        super().__init__(message)


class EmptyCaptureError(TransferError):
    """The capture finished but the local file is missing or empty."""

    def __init__(self, destination: str):
        super().__init__(
            f"Compressed file {destination} does not exist or is empty",
            destination=destination,
        )


class RemoteScriptError(ImagerError):
    """A pre- or post-imaging command on the remote host failed."""

    def __init__(self, command: str, host: str, exit_code: int):
        self.command = command
        self.host = host
        self.exit_code = exit_code
        super().__init__(
            f'"{command}" on {host} returned non-zero exit code {exit_code}'
        )


class CommandError(ImagerError):
    """Base exception for local command execution problems."""


class CommandFailedError(CommandError):
    """A local command exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = (stderr or "").strip() or (stdout or "").strip() or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class MissingToolError(CommandError):
    """A required system utility is not installed."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} is not found")


class ParseError(ImagerError):
    """Utility output did not have the expected format."""

    def __init__(self, tool: str, detail: str, output: str = ""):
        self.tool = tool
        self.detail = detail
        self.output = output
        super().__init__(f"Unexpected {tool} output: {detail}")


class LoopbackError(ImagerError):
    """Base exception for loopback attachment problems."""


class AttachError(LoopbackError):
    """No loop device could be attached to the image at the given offset."""

    def __init__(self, image: str, offset: int, reason: str):
        self.image = image
        self.offset = offset
        self.reason = reason
        super().__init__(f"Unable to attach {image} at offset {offset}: {reason}")


class DetachError(LoopbackError):
    """A loop device is still attached after asking to remove it."""

    def __init__(self, device: str, reason: str = ""):
        self.device = device
        self.reason = reason
        msg = f"Unable to detach {device}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ShrinkError(ImagerError):
    """Base exception for shrink pipeline failures.

    The unshrunk raw image is always preserved when one of these is raised.
    """

    failure_reason = "shrink"

    def __init__(self, message: str, image: Optional[str] = None):
        self.image = image
        self.report = None
        super().__init__(message)


class IntegrityError(ShrinkError):
    """The filesystem check found damage it cannot repair."""

    failure_reason = "integrity"

    def __init__(self, device: str, returncode: int, output: str = "", image: Optional[str] = None):
        self.device = device
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Filesystem on {device} is unrepairable (e2fsck exit code {returncode})",
            image=image,
        )


class RepairError(ShrinkError):
    """The orphaned inode repair procedure failed."""

    failure_reason = "unrepairable-orphans"


class PrepareExhaustedError(ShrinkError):
    """The filesystem never checked clean within the allowed passes."""

    failure_reason = "prepare-exhausted"

    def __init__(self, image: str, passes: int):
        self.passes = passes
        super().__init__(
            f"Unable to prepare image {image} after {passes} attempts", image=image
        )


class ResizeError(ShrinkError):
    """resize2fs exited with a failure."""

    failure_reason = "resize"


class ResizeExhaustedError(ShrinkError):
    """The filesystem never reached its minimum size within the allowed passes."""

    failure_reason = "resize-exhausted"

    def __init__(self, image: str, passes: int, last_output: str = ""):
        self.passes = passes
        self.last_output = last_output
        super().__init__(
            f"Resize of {image} did not reach minimum size after {passes} passes",
            image=image,
        )


class PartitionTableError(ShrinkError):
    """Deleting, creating or reading a partition table entry failed."""

    failure_reason = "partition-table"


class TruncateError(ShrinkError):
    """The image file could not be truncated to the requested length."""

    failure_reason = "truncate"

    def __init__(self, image: str, length: int, reason_text: str):
        self.length = length
        self.reason_text = reason_text
        super().__init__(
            f"Unable to truncate {image} to {length} bytes: {reason_text}", image=image
        )


class ArchiveError(ImagerError):
    """Decompressing the capture or packaging the archive failed."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)
