"""Local storage operations: loop devices, filesystem repair and resize, partition tables.

Main Functions:
    - shrink_image(): Shrink the data partition of a raw image to its minimum size
    - attach() / detach() / loop_device(): Loopback block device sessions
    - check_filesystem(): Classify an e2fsck preen pass
    - repair_orphans(): Forced repair pass for orphaned inodes
    - resize_to_minimum(): One resize2fs -M pass
    - read_partition_table(), delete_partition(), create_partition(), query_end()
    - truncate_image(): Cut the image file to a new length
"""

from .command_runners import (
    check_required_tools,
    privileged_command,
    require_tool,
    run_checked_command,
    run_command,
)
from .fsck import check_filesystem
from .loopback import attach, detach, detach_all, loop_device
from .partition_table import (
    create_partition,
    delete_partition,
    parse_parted_output,
    query_end,
    read_partition_table,
)
from .repair import repair_orphans
from .resize import parse_resize_output, resize_to_minimum
from .shrink import ShrinkPlanner, shrink_image
from .truncate import truncate_image

__all__ = [
    # Shrink pipeline
    "ShrinkPlanner",
    "shrink_image",
    # Loopback
    "attach",
    "detach",
    "detach_all",
    "loop_device",
    # Filesystem
    "check_filesystem",
    "repair_orphans",
    "resize_to_minimum",
    "parse_resize_output",
    # Partition table
    "read_partition_table",
    "parse_parted_output",
    "delete_partition",
    "create_partition",
    "query_end",
    # Truncation
    "truncate_image",
    # Command runners
    "check_required_tools",
    "privileged_command",
    "require_tool",
    "run_checked_command",
    "run_command",
]
