"""Partition table reading and editing for raw disk images.

This module wraps ``parted`` in machine-readable byte mode:
- Parsing ``parted -m ... unit B print`` into a DiskImage of Partition records
- Deleting the stale data partition entry
- Recreating it at a new, smaller size
- Re-querying the authoritative end offset after the edit

Only table entries are rewritten; filesystem contents are never touched here.
"""
from __future__ import annotations

import re
from pathlib import Path

from ssh_imager.domain.models import DiskImage, Partition
from ssh_imager.exceptions import CommandError, ParseError, PartitionTableError
from ssh_imager.logging import LoggerFactory

from .command_runners import privileged_command, run_checked_command

log = LoggerFactory.for_storage()

_BYTES_RE = re.compile(r"^(\d+)B$")


def parse_byte_value(value: str) -> int:
    """Parse a parted byte value such as ``272629760B``."""
    match = _BYTES_RE.match(value.strip())
    if not match:
        raise ParseError("parted", f"expected a byte value, got {value!r}")
    return int(match.group(1))


def parse_disk_line(line: str) -> tuple[Path, int, int, str]:
    """Parse the disk record: ``path:size:transport:lss:pss:label:model:flags``."""
    fields = line.rsplit(":", 7)
    if len(fields) < 6:
        raise ParseError("parted", f"malformed disk line {line!r}")
    path = Path(fields[0])
    size_bytes = parse_byte_value(fields[1])
    try:
        logical_sector_size = int(fields[3])
    except ValueError as error:
        raise ParseError("parted", f"bad sector size in {line!r}") from error
    return path, size_bytes, logical_sector_size, fields[5]


def parse_partition_line(line: str) -> Partition:
    """Parse a partition record: ``number:start:end:size:fstype:name:flags``."""
    fields = line.split(":")
    if len(fields) < 5 or not fields[0].isdigit():
        raise ParseError("parted", f"malformed partition line {line!r}")
    flags = tuple(
        flag.strip() for flag in (fields[6] if len(fields) > 6 else "").split(",") if flag.strip()
    )
    return Partition(
        number=int(fields[0]),
        start=parse_byte_value(fields[1]),
        end=parse_byte_value(fields[2]),
        size=parse_byte_value(fields[3]),
        fstype=fields[4].strip(),
        name=fields[5].strip() if len(fields) > 5 else "",
        flags=flags,
    )


def parse_parted_output(output: str) -> DiskImage:
    """Parse ``parted -m <image> unit B print`` output.

    Raises:
        ParseError: If the output is not in machine-readable byte units
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines or lines[0].rstrip(";") != "BYT":
        raise ParseError("parted", "missing BYT; header", output)
    if len(lines) < 2:
        raise ParseError("parted", "missing disk line", output)

    path, size_bytes, sector_size, label = parse_disk_line(lines[1].rstrip(";"))
    partitions = tuple(parse_partition_line(line.rstrip(";")) for line in lines[2:])
    for part in partitions:
        if not part.start <= part.end < size_bytes:
            raise ParseError(
                "parted",
                f"partition {part.number} ({part.start}-{part.end}) outside disk of {size_bytes} bytes",
                output,
            )
    return DiskImage(
        path=path,
        size_bytes=size_bytes,
        logical_sector_size=sector_size,
        label=label,
        partitions=partitions,
    )


def read_partition_table(image) -> DiskImage:
    """Read and parse the partition table of ``image``."""
    try:
        output = run_checked_command(
            privileged_command("parted", "-ms", image, "unit", "B", "print")
        )
    except CommandError as error:
        raise PartitionTableError(
            f"parted: Getting partition information for {image} FAILED: {error}",
            image=str(image),
        ) from error
    return parse_parted_output(output)


def delete_partition(image, number: int) -> None:
    """Remove partition ``number`` from the table (data is left in place)."""
    log.info(f"parted: Remove partition {number} from {Path(image).name}")
    try:
        run_checked_command(privileged_command("parted", "-s", image, "rm", number))
    except CommandError as error:
        raise PartitionTableError(
            f"parted: Removing partition {number} FAILED: {error}", image=str(image)
        ) from error


def create_partition(image, part_type: str, start: int, end: int) -> int:
    """Create a partition spanning byte ``start`` to ``end``.

    Returns the requested end. parted may align it, so callers that need the
    real boundary must use query_end() afterwards.
    """
    if start < 0 or end <= start:
        raise PartitionTableError(
            f"Invalid partition bounds {start}-{end}", image=str(image)
        )
    log.info(f"parted: Make new {part_type} partition from {start} to {end}")
    try:
        run_checked_command(
            privileged_command(
                "parted", "-s", image, "unit", "B", "mkpart", part_type, start, end
            )
        )
    except CommandError as error:
        raise PartitionTableError(
            f"parted: Creating partition {start}-{end} FAILED: {error}",
            image=str(image),
        ) from error
    return end


def query_end(image, number: int) -> int:
    """Return the last byte of partition ``number`` as parted now reports it."""
    table = read_partition_table(image)
    part = table.partition(number)
    if part is None:
        raise PartitionTableError(
            f"Partition {number} not found in {image}", image=str(image)
        )
    log.info(f"parted: Partition {number} endpoint = {part.end} bytes")
    return part.end
