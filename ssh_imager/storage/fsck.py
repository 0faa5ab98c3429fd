"""Filesystem integrity checking for a loop-attached ext partition."""

from __future__ import annotations

import re
from dataclasses import dataclass

from ssh_imager.domain.models import FsckOutcome
from ssh_imager.logging import LoggerFactory

from .command_runners import privileged_command, run_command

log = LoggerFactory.for_storage()

# Symptoms left behind by imaging a mounted, live filesystem. A preen pass
# refuses to fix these, a forced "fsck -y" pass can.
ORPHAN_PATTERNS = (
    re.compile(r"orphan", re.IGNORECASE),
    re.compile(r"zero dtime", re.IGNORECASE),
    re.compile(r"UNEXPECTED INCONSISTENCY"),
)

# e2fsck exit status bits
FSCK_OK = 0
FSCK_CORRECTED = 1
FSCK_CORRECTED_REBOOT = 2


@dataclass(frozen=True)
class FsckResult:
    outcome: FsckOutcome
    returncode: int
    output: str


def has_orphan_symptoms(output: str) -> bool:
    return any(pattern.search(output) for pattern in ORPHAN_PATTERNS)


def classify_fsck(returncode: int, output: str) -> FsckOutcome:
    """Map an ``e2fsck -p -f`` exit status and output to an outcome."""
    if returncode == FSCK_OK:
        return FsckOutcome.CLEAN
    if returncode in (FSCK_CORRECTED, FSCK_CORRECTED_REBOOT):
        return FsckOutcome.REPAIRED_ORPHANS
    if returncode < 8 and has_orphan_symptoms(output):
        return FsckOutcome.REPAIRED_ORPHANS
    return FsckOutcome.UNREPAIRABLE


def check_filesystem(device: str) -> FsckResult:
    """Run a forced, non-interactive preen pass on ``device`` and classify it."""
    command = privileged_command("e2fsck", "-p", "-f", device)
    log.info(f"Checking file system using: {' '.join(command)}")
    result = run_command(command)
    output = "\n".join(
        part.strip() for part in (result.stdout, result.stderr) if part and part.strip()
    )
    outcome = classify_fsck(result.returncode, output)
    if outcome is FsckOutcome.CLEAN:
        log.info(f"Filesystem OK: {output}")
    elif outcome is FsckOutcome.REPAIRED_ORPHANS:
        log.warning(
            "Filesystem NOT OK: e2fsck failed, probably because there are orphaned inodes"
        )
        log.debug(output)
    else:
        log.error(f"Filesystem on {device} is unrepairable (exit code {result.returncode})")
        log.debug(output)
    return FsckResult(outcome=outcome, returncode=result.returncode, output=output)
