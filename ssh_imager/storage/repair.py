"""Forced repair of orphaned inodes on the data partition.

A preen pass (``e2fsck -p``) gives up on the orphan lists a live capture leaves
behind. This procedure re-reads the partition table, attaches its own loop
device at the partition start and runs ``fsck -y`` on it. The loop device is
always released before returning, so the caller can re-attach afterwards.
"""

from __future__ import annotations

from pathlib import Path

from ssh_imager.exceptions import ImagerError, RepairError
from ssh_imager.logging import LoggerFactory

from .command_runners import privileged_command, run_command
from .loopback import loop_device
from .partition_table import read_partition_table

log = LoggerFactory.for_storage()


def repair_orphans(image, partition_start: int) -> None:
    """Run one forced repair pass on the partition starting at ``partition_start``.

    Raises:
        RepairError: If the partition cannot be confirmed, attached or repaired
    """
    image = Path(image)
    log.info(f"Fixing orphaned inodes in {image}...")

    try:
        table = read_partition_table(image)
    except ImagerError as error:
        raise RepairError(f"parted FAILED: {error}", image=str(image)) from error
    part = table.last_partition
    if part is None:
        raise RepairError(f"No partitions found in {image}", image=str(image))
    log.info(f"Partition={part.number}   Partition Start={part.start}")
    if part.start != partition_start:
        raise RepairError(
            f"Partition {part.number} starts at {part.start}, expected {partition_start}",
            image=str(image),
        )

    try:
        with loop_device(image, part.start) as attachment:
            command = privileged_command("fsck", "-y", attachment.device)
            log.info(f'Running "{" ".join(command[-2:])}"...')
            result = run_command(command)
            if result.stdout.strip():
                log.debug(result.stdout.strip())
            if result.returncode not in (0, 1, 2):
                raise RepairError(
                    f"fsck -y {attachment.device} exited with code {result.returncode}: "
                    f"{result.stderr.strip()}",
                    image=str(image),
                )
    except RepairError:
        raise
    except ImagerError as error:
        raise RepairError(f"Orphan repair FAILED: {error}", image=str(image)) from error

    log.info("Orphaned inodes fixed.")
