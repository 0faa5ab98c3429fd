from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger
    from ssh_imager.app.context import RunContext

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "SSH_IMAGER_LOG_DIR",
        Path.home() / ".local" / "state" / "ssh-imager" / "logs",
    )
)

RUN_LOG_FORMAT = "{time:ddd MMM D HH:mm:ss YYYY} | {level: <8} | {message}"


def setup_logging(
    run_context: RunContext | None,
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup logging sinks for a backup run.

    Logging Tiers:
    - CRITICAL/ERROR: Fatal failures that abort the run
    - SUCCESS/INFO: Run milestones (size query, transfer, shrink passes)
    - DEBUG: Command lines and utility output
    - TRACE: Everything, including raw remote script output

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug or --trace is enabled (3 day retention)

    Args:
        run_context: Run context whose buffer collects the log for mailing
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/ssh-imager/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        colorize=True,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <17}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - Important events only (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <17} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name}:{function}:{line} | "
                "{extra[source]: <10} | "
                "{message}"
            ),
        )

    # SINK 4: Run buffer - the log that is mailed when the run ends
    if run_context is not None:
        run_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
        logger.add(
            run_context.add_log,
            level=run_level,
            format=RUN_LOG_FORMAT,
            colorize=False,
        )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["shrink", "storage"])
        source: Source component (e.g., "shrink", "remote")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion and failure with the elapsed time.

    Args:
        operation: Operation name (e.g., "backup", "shrink")
        **details: Operation-specific details bound to every record

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("shrink", image="/home/pi/mypi.img") as log:
            log.debug("Reading partition table")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started")

        try:
            yield log
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed after {duration:.1f}s "
                f"({type(e).__name__}): {e}"
            )
            raise
        duration = time.time() - start_time
        log.success(f"{operation.capitalize()} completed in {duration:.1f}s")


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_transfer(job_id: str | None = None) -> Logger:
        """Logger for the size query, streamed capture and archiving."""
        if job_id is None:
            job_id = f"transfer-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="transfer", tags=["transfer"])

    @staticmethod
    def for_shrink() -> Logger:
        """Logger for the shrink pipeline."""
        return logger.bind(source="shrink", tags=["shrink", "storage"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for loop devices, partition tables and local commands."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_remote() -> Logger:
        """Logger for ssh commands run on the source host."""
        return logger.bind(source="remote", tags=["remote", "ssh"])

    @staticmethod
    def for_output() -> Logger:
        """Logger for raw utility and remote script output."""
        return logger.bind(source="output", tags=["output"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, configuration and shutdown."""
        return logger.bind(source="system", tags=["system"])
