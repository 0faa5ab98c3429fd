"""Local decompression of the capture and packaging of the final archive."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional

from ssh_imager.exceptions import ArchiveError
from ssh_imager.logging import LoggerFactory

log = LoggerFactory.for_transfer()


def get_decompression_tool() -> tuple[Optional[str], Optional[list[str]]]:
    """Get the gzip decompressor and its arguments.

    Returns:
        (tool_path, arguments) or (None, None) if not available
    """
    tool = shutil.which("pigz") or shutil.which("gzip")
    if tool:
        return tool, ["-dc"]
    return None, None


def decompress_image(source: Path, destination: Path) -> Path:
    """Decompress a gzip capture into a raw image file.

    Raises:
        ArchiveError: If no decompressor is found or it exits non-zero
    """
    source = Path(source)
    destination = Path(destination)
    tool, args = get_decompression_tool()
    if tool is None:
        raise ArchiveError("Neither pigz nor gzip is available", path=str(source))

    log.info(f"Decompressing {source} into {destination}")
    try:
        with destination.open("wb") as output:
            result = subprocess.run(
                [tool, *args, str(source)],
                stdout=output,
                stderr=subprocess.PIPE,
            )
    except OSError as error:
        raise ArchiveError(f"Unable to write {destination}: {error}", path=str(destination)) from error

    if result.returncode != 0:
        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        raise ArchiveError(
            f"Decompressing {source} FAILED: {stderr or f'exit code {result.returncode}'}",
            path=str(source),
        )
    if not destination.is_file() or destination.stat().st_size == 0:
        raise ArchiveError(f"Decompressed image {destination} is empty", path=str(destination))
    return destination


def remove_stale_archives(directory: Path, name: str, extension: str) -> list[Path]:
    """Delete earlier archives of ``name`` (``<name>_*GB<extension>``)."""
    removed = []
    for stale in sorted(Path(directory).glob(f"{name}_*GB{extension}")):
        log.info(f"Removing old archive {stale}")
        stale.unlink()
        removed.append(stale)
    return removed


def pack_archive(files: Iterable[Path], archive: Path) -> Path:
    """Package ``files`` into a zip archive, replacing any existing one.

    Raises:
        ArchiveError: If zip exits non-zero or produces nothing
    """
    archive = Path(archive)
    files = [str(path) for path in files]
    zip_tool = shutil.which("zip")
    if zip_tool is None:
        raise ArchiveError("zip is not available", path=str(archive))
    if archive.exists():
        archive.unlink()

    log.info(f"Compressing {', '.join(files)} into {archive}")
    result = subprocess.run(
        [zip_tool, "-j", str(archive), *files],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise ArchiveError(
            f"Archiving into {archive} FAILED: {result.stderr.strip() or result.stdout.strip()}",
            path=str(archive),
        )
    if not archive.is_file():
        raise ArchiveError(f"zip did not create {archive}", path=str(archive))
    return archive
