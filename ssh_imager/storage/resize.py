"""Minimum-size filesystem resize passes (resize2fs -M)."""

from __future__ import annotations

import re

from ssh_imager.config import settings
from ssh_imager.domain.models import ResizeResult
from ssh_imager.exceptions import ParseError, ResizeError
from ssh_imager.logging import LoggerFactory

from .command_runners import privileged_command, run_command

log = LoggerFactory.for_storage()

# "The filesystem on /dev/loop0 is now 402653 (4k) blocks long."
# "The filesystem is already 402653 (4k) blocks long.  Nothing to do!"
_LENGTH_RE = re.compile(
    r"is (?P<state>now|already) (?P<blocks>\d+) \((?P<kib>\d+)k\) blocks long",
    re.IGNORECASE,
)


def parse_resize_output(output: str) -> ResizeResult:
    """Extract the block count and whether the filesystem was already minimal.

    Raises:
        ParseError: If no "blocks long" line is present
    """
    matches = list(_LENGTH_RE.finditer(output))
    if not matches:
        raise ParseError("resize2fs", "no 'blocks long' line", output)
    match = matches[-1]
    block_size = int(match.group("kib")) * 1024 or settings.get_int(
        "filesystem_block_size", settings.DEFAULT_BLOCK_SIZE
    )
    return ResizeResult(
        block_count=int(match.group("blocks")),
        block_size=block_size,
        already_minimum=match.group("state").lower() == "already",
        output=output,
    )


def resize_to_minimum(device: str) -> ResizeResult:
    """Run one ``resize2fs -M`` pass on ``device``.

    Raises:
        ResizeError: If resize2fs exits non-zero
        ParseError: If its output cannot be understood
    """
    result = run_command(privileged_command("resize2fs", "-M", device))
    output = "\n".join(
        part.strip() for part in (result.stdout, result.stderr) if part and part.strip()
    )
    if result.returncode != 0:
        raise ResizeError(f"resize2fs on {device} FAILED: {output}")
    return parse_resize_output(output)
