"""Shrink the data partition of a raw disk image to its minimum footprint.

The planner is a small state machine::

    PREPARING(pass) -> PREPARED -> RESIZING(pass) -> RESIZED -> TRUNCATING -> DONE

and any state can end in FAILED(reason). Preparation checks the filesystem
until it is clean, running the forced orphan repair between passes.
Resizing repeats ``resize2fs -M`` until the
filesystem reports it is already at its minimum. Only then is the partition
entry recreated at the new size and the image file truncated after it.

The filesystem is always resized before its partition is shrunk, and the
boot partition is never touched. On failure the image is left in place for
the caller to keep.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ssh_imager.config import settings
from ssh_imager.domain.models import (
    FsckOutcome,
    LoopbackAttachment,
    Partition,
    ResizeResult,
    ShrinkAttempt,
    ShrinkReport,
    ShrinkState,
)
from ssh_imager.exceptions import (
    ImagerError,
    IntegrityError,
    LoopbackError,
    ParseError,
    PartitionTableError,
    PrepareExhaustedError,
    RepairError,
    ResizeExhaustedError,
    ShrinkError,
)
from ssh_imager.logging import LoggerFactory, operation_context

from .fsck import check_filesystem
from .loopback import attach, detach, release_quietly
from .partition_table import (
    create_partition,
    delete_partition,
    query_end,
    read_partition_table,
)
from .repair import repair_orphans
from .resize import resize_to_minimum
from .truncate import truncate_image

log = LoggerFactory.for_shrink()


@dataclass(frozen=True)
class RetryPolicy:
    """A fixed number of attempts, numbered from 1."""

    max_attempts: int

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def attempts(self) -> range:
        return range(1, self.max_attempts + 1)


def _failure_reason(error: ImagerError) -> str:
    if isinstance(error, ShrinkError):
        return error.failure_reason
    if isinstance(error, LoopbackError):
        return "loopback"
    if isinstance(error, ParseError):
        return "parse"
    return "error"


class ShrinkPlanner:
    """Drives one shrink of one image; not reusable."""

    def __init__(
        self,
        image,
        *,
        partition_number: Optional[int] = None,
        prepare_policy: Optional[RetryPolicy] = None,
        resize_policy: Optional[RetryPolicy] = None,
        repair_policy: Optional[RetryPolicy] = None,
    ):
        self.image = Path(image)
        self.partition_number = partition_number or settings.get_int(
            "data_partition_number", settings.DEFAULT_DATA_PARTITION
        )
        self.prepare_policy = prepare_policy or RetryPolicy(
            settings.get_int("prepare_max_passes", settings.DEFAULT_PREPARE_MAX_PASSES)
        )
        self.resize_policy = resize_policy or RetryPolicy(
            settings.get_int("resize_max_passes", settings.DEFAULT_RESIZE_MAX_PASSES)
        )
        self.repair_policy = repair_policy or RetryPolicy(
            settings.get_int(
                "orphan_repair_attempts", settings.DEFAULT_ORPHAN_REPAIR_ATTEMPTS
            )
        )
        self.report = ShrinkReport(image=self.image)
        self._attachment: Optional[LoopbackAttachment] = None
        self._partition: Optional[Partition] = None

    @property
    def state(self) -> ShrinkState:
        return self.report.state

    def _transition(self, state: ShrinkState) -> None:
        self.report.state = state
        self.report.states.append(state)
        log.debug(f"Shrink state -> {state.value}")

    def run(self) -> ShrinkReport:
        """Shrink the image in place and return what was done.

        Raises:
            ShrinkError: Any failure of the pipeline; ``error.report`` holds the
                report up to the failure
            LoopbackError: A loop device could not be attached or released
            ParseError: A utility printed something unexpected
        """
        if not self.image.is_file():
            error = ShrinkError(f"{self.image} is not a file.", image=str(self.image))
            self._fail(error)
            raise error
        self.report.original_length = self.image.stat().st_size

        try:
            self._prepare()
            result = self._resize()
            self._truncate(result)
        except ImagerError as error:
            self._fail(error)
            raise
        finally:
            release_quietly(self._attachment)

        self._transition(ShrinkState.DONE)
        return self.report

    def _fail(self, error: ImagerError) -> None:
        self.report.failure_reason = _failure_reason(error)
        if isinstance(error, ShrinkError):
            error.report = self.report
        self._transition(ShrinkState.FAILED)
        log.error(f"Shrink FAILED ({self.report.failure_reason}): {error}")

    def _read_data_partition(self) -> Partition:
        table = read_partition_table(self.image)
        part = table.partition(self.partition_number)
        if part is None or not part.is_ext:
            raise PartitionTableError(
                f"No ext partition {self.partition_number} in {self.image}",
                image=str(self.image),
            )
        if table.last_partition != part:
            raise PartitionTableError(
                f"Partition {self.partition_number} is not the last partition in {self.image}",
                image=str(self.image),
            )
        log.info(
            f"Partition {part.number}: Start = {part.start} Bytes    "
            f"End = {part.end} Bytes    Size = {part.size} Bytes"
        )
        self._partition = part
        return part

    def _prepare(self) -> None:
        for pass_number in self.prepare_policy.attempts():
            self._transition(ShrinkState.PREPARING)
            log.info(f"Preparing image for shrinking: Pass #{pass_number}")
            part = self._read_data_partition()
            self._attachment = attach(self.image, part.start)

            result = check_filesystem(self._attachment.device)
            self.report.attempts.append(ShrinkAttempt(pass_number, result.outcome))

            if result.outcome is FsckOutcome.CLEAN:
                log.info(f"Image ready for shrinking. It took {pass_number} pass(es).")
                self._transition(ShrinkState.PREPARED)
                return
            if result.outcome is FsckOutcome.UNREPAIRABLE:
                raise IntegrityError(
                    self._attachment.device,
                    result.returncode,
                    result.output,
                    image=str(self.image),
                )

            # The repair procedure attaches its own loop device.
            detach(self._attachment)
            self._repair_orphans(part.start)
            log.info(
                f"End of image preparation pass {pass_number}. Another pass is needed."
            )

        raise PrepareExhaustedError(str(self.image), self.prepare_policy.max_attempts)

    def _repair_orphans(self, partition_start: int) -> None:
        last_error: Optional[RepairError] = None
        for attempt in self.repair_policy.attempts():
            try:
                repair_orphans(self.image, partition_start)
                return
            except RepairError as error:
                last_error = error
                log.warning(f"Orphan repair attempt {attempt} FAILED: {error}")
        raise RepairError(
            f"Unable to fix inodes after {self.repair_policy.max_attempts} attempts: {last_error}",
            image=str(self.image),
        ) from last_error

    def _resize(self) -> ResizeResult:
        log.info("Shrinking image: resize filesystem using estimated minimum...")
        result: Optional[ResizeResult] = None
        for pass_number in self.resize_policy.attempts():
            self._transition(ShrinkState.RESIZING)
            self.report.resize_passes = pass_number
            result = resize_to_minimum(self._attachment.device)
            log.info(f"Resize pass # {pass_number}: OK")
            if result.already_minimum:
                break
        else:
            raise ResizeExhaustedError(
                str(self.image),
                self.resize_policy.max_attempts,
                result.output if result else "",
            )

        self.report.block_count = result.block_count
        detach(self._attachment)
        return result

    def _truncate(self, result: ResizeResult) -> None:
        if self.report.resize_passes == 1:
            self._truncate_unresized()
            return

        self._transition(ShrinkState.RESIZED)
        part = self._partition
        log.info(
            f"Resize finished on pass # {self.report.resize_passes}. New length is "
            f"{result.block_count} {result.block_size}-byte blocks"
        )
        # Start plus the resized filesystem length; parted may align it, so the
        # real end is read back after mkpart.
        requested_end = part.start + result.size_bytes
        if requested_end > part.end:
            raise PartitionTableError(
                f"New end {requested_end} is past the current end {part.end}; refusing to grow",
                image=str(self.image),
            )

        self._transition(ShrinkState.TRUNCATING)
        self.report.partition_start = part.start
        delete_partition(self.image, part.number)
        self.report.partition_edits += 1
        create_partition(self.image, "primary", part.start, requested_end)
        self.report.partition_edits += 1
        new_end = query_end(self.image, part.number)
        self.report.new_end = new_end
        self.report.final_length = truncate_image(self.image, new_end + 1)
        log.info("Image shrink complete.")

    def _truncate_unresized(self) -> None:
        # Nothing was resized, but the image may have been expanded earlier.
        table = read_partition_table(self.image)
        end = table.last_partition.end
        self.report.partition_start = self._partition.start
        if table.ends_at(end):
            log.info("Image is already shrunk. Nothing to do.")
            self.report.final_length = self.report.original_length
            return

        log.info("Shrinking not required, but image needs to be truncated.")
        log.info(f"Endpoint = {end} bytes")
        self._transition(ShrinkState.TRUNCATING)
        self.report.new_end = end
        self.report.final_length = truncate_image(self.image, end + 1)
        log.info("Truncation completed.")


def shrink_image(image, **kwargs) -> ShrinkReport:
    """Shrink ``image`` in place; see ShrinkPlanner for keyword arguments."""
    with operation_context("shrink", image=str(image)):
        return ShrinkPlanner(image, **kwargs).run()
