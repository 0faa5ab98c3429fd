"""Scratch files for a run, and termination signals as exceptions.

Usage:
    with termination_signals(), RunWorkspace() as workspace:
        capture = workspace.scratch(session.compressed_path)
        ...
        workspace.keep(capture)

Scratch files still registered when the scope exits are deleted. A SIGTERM
or SIGINT raises Terminated inside the main thread so every ``with`` block
and ``finally`` clause up the stack runs before the process exits.
"""

from __future__ import annotations

import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ssh_imager.logging import LoggerFactory

log = LoggerFactory.for_system()


class Terminated(BaseException):
    """The process received a termination signal."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Received {signal.Signals(signum).name}")

    @property
    def exit_code(self) -> int:
        return 128 + self.signum


def _raise_terminated(signum, frame):
    raise Terminated(signum)


@contextmanager
def termination_signals(signals=(signal.SIGTERM, signal.SIGINT)) -> Iterator[None]:
    """Turn termination signals into Terminated for the duration of the block."""
    previous = {}
    for signum in signals:
        previous[signum] = signal.signal(signum, _raise_terminated)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class RunWorkspace:
    """Files written during a run that are removed unless kept."""

    def __init__(self):
        self._scratch: list[Path] = []

    def __enter__(self) -> RunWorkspace:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    def scratch(self, path) -> Path:
        """Register ``path`` for deletion when the workspace closes."""
        path = Path(path)
        self._scratch.append(path)
        return path

    def keep(self, path) -> None:
        """Stop tracking ``path``; it survives the workspace."""
        path = Path(path)
        if path in self._scratch:
            self._scratch.remove(path)

    def discard(self, path) -> None:
        """Delete ``path`` now and stop tracking it."""
        path = Path(path)
        self.keep(path)
        path.unlink(missing_ok=True)

    def cleanup(self) -> None:
        for path in reversed(self._scratch):
            if path.exists():
                log.info(f"Removing partial file {path}")
                path.unlink(missing_ok=True)
        self._scratch.clear()
