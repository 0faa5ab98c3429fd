"""Domain model for imaging, shrinking and archiving a remote device.

Type-safe objects replace the loose strings and environment variables a
shell implementation would thread through every step: the parsed partition
table, the loopback attachment, each shrink pass and the run parameters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

BYTES_PER_GB = 1_000_000_000


# ==============================================================================
# Disk Image Domain
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """A contiguous byte range within a disk image (inclusive end)."""

    number: int
    start: int  # First byte
    end: int  # Last byte
    size: int
    fstype: str = ""
    name: str = ""
    flags: tuple[str, ...] = ()

    @property
    def is_ext(self) -> bool:
        """True for ext2/3/4 filesystems, the only kind that can be shrunk."""
        return self.fstype.startswith("ext")


@dataclass(frozen=True)
class DiskImage:
    """A raw disk image file and its partition table."""

    path: Path
    size_bytes: int
    logical_sector_size: int = 512
    label: str = ""
    partitions: tuple[Partition, ...] = ()

    def partition(self, number: int) -> Optional[Partition]:
        for part in self.partitions:
            if part.number == number:
                return part
        return None

    @property
    def last_partition(self) -> Optional[Partition]:
        if not self.partitions:
            return None
        return self.partitions[-1]

    def ends_at(self, end_offset: int) -> bool:
        """True when the image file stops right after ``end_offset``."""
        return end_offset + 1 == self.size_bytes


@dataclass
class LoopbackAttachment:
    """A loop device exposing an image from a byte offset."""

    device: str  # e.g., "/dev/loop0"
    image: Path
    offset: int
    attached: bool = True


# ==============================================================================
# Shrink Domain
# ==============================================================================


class FsckOutcome(str, Enum):
    CLEAN = "clean"
    REPAIRED_ORPHANS = "repaired-orphans"
    UNREPAIRABLE = "unrepairable"


class ShrinkState(str, Enum):
    PREPARING = "preparing"
    PREPARED = "prepared"
    RESIZING = "resizing"
    RESIZED = "resized"
    TRUNCATING = "truncating"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class ShrinkAttempt:
    """One preparation pass: a filesystem check and what came of it."""

    pass_number: int
    outcome: FsckOutcome

    @property
    def label(self) -> str:
        if self.outcome is FsckOutcome.REPAIRED_ORPHANS:
            return "repaired-retry"
        return self.outcome.value


@dataclass(frozen=True)
class ResizeResult:
    """Parsed result of one minimum-size resize pass."""

    block_count: int
    block_size: int
    already_minimum: bool
    output: str = ""

    @property
    def size_bytes(self) -> int:
        return self.block_count * self.block_size


@dataclass
class ShrinkReport:
    """What the shrink planner did to an image."""

    image: Path
    state: ShrinkState = ShrinkState.PREPARING
    failure_reason: Optional[str] = None
    attempts: list[ShrinkAttempt] = field(default_factory=list)
    states: list[ShrinkState] = field(default_factory=list)
    resize_passes: int = 0
    block_count: Optional[int] = None
    partition_start: Optional[int] = None
    new_end: Optional[int] = None
    original_length: Optional[int] = None
    final_length: Optional[int] = None
    partition_edits: int = 0

    @property
    def prepare_passes(self) -> int:
        return len(self.attempts)

    @property
    def truncated(self) -> bool:
        return (
            self.final_length is not None
            and self.original_length is not None
            and self.final_length != self.original_length
        )


# ==============================================================================
# Transfer Domain
# ==============================================================================


@dataclass(frozen=True)
class RemoteHost:
    """The source host and how to reach it over ssh."""

    user: str
    host: str
    port: int = 22
    key: Optional[Path] = None

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    @classmethod
    def from_target(cls, target: str, *, port: int = 22, key: Optional[Path] = None) -> RemoteHost:
        """Parse ``USER@HOST``.

        Raises:
            ValueError: If the target is not of the form USER@HOST
        """
        if "@" not in target:
            raise ValueError("USER@HOST required.")
        user, host = target.split("@", 1)
        if not user or not host:
            raise ValueError("USER@HOST required.")
        return cls(user=user, host=host, port=port, key=key)


def size_in_gb(device_size: int) -> int:
    """Whole gigabytes (10^9 bytes), rounded down."""
    return device_size // BYTES_PER_GB


def archive_name(name: str, device_size: int, extension: str) -> str:
    """Final archive name, e.g. ``mypi_8GB.gz``."""
    return f"{name}_{size_in_gb(device_size)}GB{extension}"


@dataclass(frozen=True)
class TransferSession:
    """Everything one backup run needs, built once from the invocation."""

    remote: RemoteHost
    device: str
    name: str
    destination_dir: Path
    shrink: bool = False
    pre_scripts: tuple[str, ...] = ()
    post_scripts: tuple[str, ...] = ()
    recipients: tuple[str, ...] = ()
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def compressed_path(self) -> Path:
        stamp = self.started_at.strftime("%Y%m%dT%H%M")
        return self.destination_dir / f"{self.name}-{stamp}.gz"

    @property
    def image_path(self) -> Path:
        return self.destination_dir / f"{self.name}.img"

    @property
    def archive_extension(self) -> str:
        return ".zip" if self.shrink else ".gz"

    def archive_path(self, device_size: int) -> Path:
        return self.destination_dir / archive_name(
            self.name, device_size, self.archive_extension
        )


@dataclass(frozen=True)
class BackupResult:
    """Outcome of a successful backup run."""

    archive_path: Path
    device_size: int
    shrunk: bool
    shrink_report: Optional[ShrinkReport] = None

    @property
    def size_gb(self) -> int:
        return size_in_gb(self.device_size)
