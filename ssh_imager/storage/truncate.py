"""Truncation of the image file once the data partition has been shrunk."""

from __future__ import annotations

from pathlib import Path

from ssh_imager.exceptions import CommandError, TruncateError
from ssh_imager.logging import LoggerFactory

from .command_runners import privileged_command, run_checked_command

log = LoggerFactory.for_storage()


def truncate_image(image, new_length: int) -> int:
    """Set the length of ``image`` to exactly ``new_length`` bytes.

    Callers convert an inclusive end offset to a length (end + 1).

    Raises:
        TruncateError: If the length is invalid, the tool fails, or the file
            does not end up at the requested length
    """
    image = Path(image)
    if new_length <= 0:
        raise TruncateError(str(image), new_length, "length must be positive")
    if not image.is_file():
        raise TruncateError(str(image), new_length, "image is not a file")

    log.info(f"truncate: Truncating {image} to {new_length} Bytes...")
    try:
        run_checked_command(privileged_command("truncate", "-s", new_length, image))
    except CommandError as error:
        raise TruncateError(str(image), new_length, str(error)) from error

    actual = image.stat().st_size
    if actual != new_length:
        raise TruncateError(
            str(image), new_length, f"file is {actual} bytes after truncation"
        )
    log.info("Truncated OK")
    return actual
