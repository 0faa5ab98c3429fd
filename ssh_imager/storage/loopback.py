"""Loopback block device sessions over a disk image.

A session exposes an image from a byte offset (a partition start) as a block
device so e2fsck and resize2fs can work on it. Every attachment is tracked
until it is detached, so cleanup paths can release whatever is left.

Usage:
    from ssh_imager.storage.loopback import loop_device

    with loop_device(image_path, partition.start) as attachment:
        check_filesystem(attachment.device)

Detaching is idempotent: a handle that was never attached, or has already
been detached, is silently ignored.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from ssh_imager.domain.models import LoopbackAttachment
from ssh_imager.exceptions import AttachError, CommandError, DetachError
from ssh_imager.logging import LoggerFactory

from .command_runners import privileged_command, run_command

log = LoggerFactory.for_storage()

# Lock for thread-safe access to the attachment registry
_lock = threading.Lock()

# Attachments created by this process and not yet detached
_active: dict[str, LoopbackAttachment] = {}


def attach(image, offset: int) -> LoopbackAttachment:
    """Attach ``image`` starting at byte ``offset`` to the first free loop device.

    Raises:
        AttachError: If the offset is outside the image or no loop device is free
    """
    image = Path(image)
    if not image.is_file():
        raise AttachError(str(image), offset, "image is not a file")
    image_size = image.stat().st_size
    if offset < 0 or offset >= image_size:
        raise AttachError(
            str(image), offset, f"offset outside image of {image_size} bytes"
        )

    try:
        command = privileged_command("losetup", "-f", "--show", "-o", offset, image)
    except CommandError as error:
        raise AttachError(str(image), offset, str(error)) from error
    log.debug(f"Setting up loopback using: {' '.join(command)}")
    result = run_command(command)
    device = result.stdout.strip()
    if result.returncode != 0 or not device:
        reason = result.stderr.strip() or "no free loop device"
        raise AttachError(str(image), offset, reason)

    attachment = LoopbackAttachment(device=device, image=image, offset=offset)
    with _lock:
        _active[device] = attachment
    log.info(f"Loopback {device} ready ({image.name} at offset {offset})")
    return attachment


def is_attached(device: str) -> bool:
    """Ask losetup whether ``device`` is still bound to a file."""
    result = run_command(privileged_command("losetup", device))
    return result.returncode == 0


def detach(attachment: Optional[LoopbackAttachment]) -> None:
    """Detach a loop device; a no-op for None or already-detached handles.

    Raises:
        DetachError: If the device is still attached after ``losetup -d``
    """
    if attachment is None or not attachment.attached:
        return

    result = run_command(privileged_command("losetup", "-d", attachment.device))
    if result.returncode != 0 and is_attached(attachment.device):
        raise DetachError(attachment.device, result.stderr.strip())

    attachment.attached = False
    with _lock:
        _active.pop(attachment.device, None)
    log.info(f"Loopback {attachment.device} removed")


def release_quietly(attachment: Optional[LoopbackAttachment]) -> None:
    """Detach on an error path without masking the error being propagated."""
    try:
        detach(attachment)
    except (DetachError, CommandError) as error:
        log.error(f"Loopback removal FAILED: {error}")


def active_attachments() -> list[LoopbackAttachment]:
    with _lock:
        return list(_active.values())


def detach_all() -> None:
    """Release every attachment this process still holds (exit/cancellation path)."""
    for attachment in active_attachments():
        release_quietly(attachment)


@contextmanager
def loop_device(image, offset: int) -> Generator[LoopbackAttachment, None, None]:
    """Scoped loopback session: detached on every exit path.

    The body may detach early (for example before handing the image to a
    procedure that needs its own session); the final detach is then a no-op.
    """
    attachment = attach(image, offset)
    try:
        yield attachment
    except BaseException:
        release_quietly(attachment)
        raise
    detach(attachment)
