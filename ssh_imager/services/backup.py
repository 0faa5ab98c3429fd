"""Backup orchestration: capture a remote device, optionally shrink, archive.

Sequence for one run:
    1. Query the remote device size and check local free space
       (twice the device size when shrinking)
    2. Run the pre-imaging commands on the remote host
    3. Stream a compressed dump of the device into a local capture file
    4. Run the post-imaging commands, even when the transfer failed
    5. Without shrink: rename the capture to ``<name>_<N>GB.gz``
    6. With shrink: decompress to ``<name>.img``, shrink it, zip it into
       ``<name>_<N>GB.zip`` and delete the raw image

The GB figure is always the original device size. A failed shrink leaves the
raw image in the destination directory.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, Optional

from ssh_imager.app.workspace import RunWorkspace
from ssh_imager.domain.models import (
    BackupResult,
    BYTES_PER_GB,
    TransferSession,
    size_in_gb,
)
from ssh_imager.exceptions import (
    DestinationError,
    EmptyCaptureError,
    ImagerError,
    InsufficientSpaceError,
    RemoteScriptError,
    TransferError,
)
from ssh_imager.logging import LoggerFactory, operation_context
from ssh_imager.services.compression import (
    decompress_image,
    pack_archive,
    remove_stale_archives,
)
from ssh_imager.services.remote import RemoteSession
from ssh_imager.storage.shrink import shrink_image

log = LoggerFactory.for_transfer()


def required_space(device_size: int, shrink: bool) -> int:
    """Local bytes needed: room for the raw image and the capture when shrinking."""
    return device_size * 2 if shrink else device_size


def available_space(directory: Path) -> int:
    return shutil.disk_usage(directory).free


def check_space(session: TransferSession, device_size: int) -> int:
    """Verify the destination can hold the capture.

    Raises:
        DestinationError: If the destination directory cannot be inspected
        InsufficientSpaceError: If free space is below the requirement
    """
    needed = required_space(device_size, session.shrink)
    try:
        available = available_space(session.destination_dir)
    except OSError as error:
        raise DestinationError(
            str(session.destination_dir), error.strerror or str(error)
        ) from error
    if available < needed:
        raise InsufficientSpaceError(str(session.destination_dir), needed, available)
    log.info(
        f"This host has {available // BYTES_PER_GB} GB available, which is enough "
        f"to back up {session.name}'s {session.device}"
    )
    return available


def _capture(remote: RemoteSession, session: TransferSession, workspace: RunWorkspace) -> Path:
    capture = workspace.scratch(session.compressed_path)
    try:
        written = remote.stream_device(session.device, capture)
        if written == 0:
            raise EmptyCaptureError(str(capture))
    except TransferError as error:
        log.error(f"Download FAILED: {error}")
        try:
            remote.run_scripts(session.post_scripts)
        except RemoteScriptError as script_error:
            log.error(str(script_error))
        raise
    remote.run_scripts(session.post_scripts)
    return capture


def _archive_without_shrink(
    capture: Path, session: TransferSession, device_size: int, workspace: RunWorkspace
) -> Path:
    log.info("Image will not be shrunk.")
    destination = session.archive_path(device_size)
    capture.replace(destination)
    workspace.keep(capture)
    return destination


def _shrink_and_archive(
    capture: Path,
    session: TransferSession,
    device_size: int,
    workspace: RunWorkspace,
    shrink: Callable,
):
    image = workspace.scratch(session.image_path)
    decompress_image(capture, image)
    log.info("Decompressed OK.")
    workspace.discard(capture)
    # From here on the raw image is the only copy of the device.
    workspace.keep(image)

    try:
        report = shrink(image)
    except ImagerError:
        log.error(f"Shrinking {image} failed. The unshrunk image is kept.")
        raise

    destination = session.archive_path(device_size)
    remove_stale_archives(session.destination_dir, session.name, session.archive_extension)
    pack_archive([image], destination)
    image.unlink()
    return destination, report


def run_backup(
    session: TransferSession,
    *,
    remote: Optional[RemoteSession] = None,
    workspace: Optional[RunWorkspace] = None,
    shrink: Callable = shrink_image,
) -> BackupResult:
    """Capture, optionally shrink, and archive the remote device.

    Raises:
        ValidationError: Bad size answer or not enough local space
        TransferError: The capture failed or is empty
        RemoteScriptError: A pre- or post-imaging command failed
        ArchiveError: Decompression or packaging failed
        ShrinkError: The image could not be shrunk; the raw image is kept
    """
    remote = remote or RemoteSession(session.remote)
    with operation_context("backup", name=session.name, device=session.device):
        device_size = remote.query_device_size(session.device)
        log.info(f"{session.device} on {session.name} is {size_in_gb(device_size)} GB")
        check_space(session, device_size)

        remote.run_scripts(session.pre_scripts)

        with workspace or RunWorkspace() as scope:
            capture = _capture(remote, session, scope)
            if not capture.is_file() or capture.stat().st_size == 0:
                raise EmptyCaptureError(str(capture))

            report = None
            if session.shrink:
                destination, report = _shrink_and_archive(
                    capture, session, device_size, scope, shrink
                )
            else:
                destination = _archive_without_shrink(capture, session, device_size, scope)

        log.info(f"{session.name} image backup complete. Image is in {destination.name}.")
        return BackupResult(
            archive_path=destination,
            device_size=device_size,
            shrunk=session.shrink,
            shrink_report=report,
        )
