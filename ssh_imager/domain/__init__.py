"""Domain objects for ssh-imager."""

from .models import (
    BYTES_PER_GB,
    BackupResult,
    DiskImage,
    FsckOutcome,
    LoopbackAttachment,
    Partition,
    RemoteHost,
    ResizeResult,
    ShrinkAttempt,
    ShrinkReport,
    ShrinkState,
    TransferSession,
    archive_name,
    size_in_gb,
)

__all__ = [
    "BYTES_PER_GB",
    "BackupResult",
    "DiskImage",
    "FsckOutcome",
    "LoopbackAttachment",
    "Partition",
    "RemoteHost",
    "ResizeResult",
    "ShrinkAttempt",
    "ShrinkReport",
    "ShrinkState",
    "TransferSession",
    "archive_name",
    "size_in_gb",
]
