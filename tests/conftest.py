"""
Pytest configuration and shared fixtures for ssh-imager tests.

This module provides common fixtures used across all test modules. No test
needs root, loop devices or a network: every system tool is replaced by a
mock or by the FakeTools simulator below.
"""

import os
import subprocess
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest

from ssh_imager.config import settings


BOOT_START = 4194304
BOOT_END = 272629759
ROOT_START = 272629760
IMAGE_SIZE = 1073741824  # 1 GiB, sparse on disk


# ==============================================================================
# Isolation Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings(tmp_path, monkeypatch):
    """Every test starts from built-in defaults and never touches ~/.config."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield settings.settings_store
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture(autouse=True)
def mock_which(mocker):
    """Pretend every tool is installed under /usr/sbin."""
    return mocker.patch("shutil.which", side_effect=lambda name: f"/usr/sbin/{name}")


@pytest.fixture(autouse=True)
def no_leaked_attachments():
    """Forget loop attachments a failing test may have left registered."""
    from ssh_imager.storage import loopback

    yield
    with loopback._lock:
        loopback._active.clear()


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


# ==============================================================================
# Utility Output Fixtures
# ==============================================================================


def parted_output(image: str, size: int, root_end: int, root_fstype: str = "ext4") -> str:
    """Machine-readable ``parted -ms IMG unit B print`` output for a Pi image."""
    return (
        "BYT;\n"
        f"{image}:{size}B:file:512:512:msdos::;\n"
        f"1:{BOOT_START}B:{BOOT_END}B:{BOOT_END - BOOT_START + 1}B:fat32::lba;\n"
        f"2:{ROOT_START}B:{root_end}B:{root_end - ROOT_START + 1}B:{root_fstype}::;\n"
    )


@pytest.fixture
def mock_parted_output() -> str:
    return parted_output("/home/pi/mypi.img", IMAGE_SIZE, IMAGE_SIZE - 1)


@pytest.fixture
def mock_e2fsck_orphans() -> str:
    return (
        "rootfs: Clearing orphaned inode 131102 (uid=0, gid=0, mode=0100644, size=0)\n"
        "rootfs: Inodes that were part of a corrupted orphan linked list found.\n\n"
        "rootfs: UNEXPECTED INCONSISTENCY; RUN fsck MANUALLY.\n"
        "\t(i.e., without -a or -p options)\n"
    )


@pytest.fixture
def mock_e2fsck_clean() -> str:
    return "rootfs: 45123/1881600 files (0.2% non-contiguous), 402653/7731200 blocks\n"


def resize_now(blocks: int) -> str:
    return (
        "resize2fs 1.46.2 (28-Feb-2021)\n"
        "Resizing the filesystem on /dev/loop0 to %d (4k) blocks.\n"
        "The filesystem on /dev/loop0 is now %d (4k) blocks long.\n" % (blocks, blocks)
    )


def resize_already(blocks: int) -> str:
    return (
        "resize2fs 1.46.2 (28-Feb-2021)\n"
        "The filesystem is already %d (4k) blocks long.  Nothing to do!\n" % blocks
    )


# ==============================================================================
# Disk Image Fixtures
# ==============================================================================


@pytest.fixture
def fake_image(tmp_path) -> Path:
    """A sparse file the size of a small Pi image."""
    image = tmp_path / "mypi.img"
    with image.open("wb") as handle:
        handle.truncate(IMAGE_SIZE)
    return image


class FakeTools:
    """
    In-memory stand-in for losetup, parted, e2fsck, fsck, resize2fs and truncate.

    The partition table lives in ``root_end``; ``parted rm``/``mkpart`` edit
    it and ``truncate`` really resizes the image file, so the shrink pipeline
    can run end to end against a sparse file.
    """

    def __init__(self, image: Path, root_end: Optional[int] = None):
        self.image = image
        self.root_end = root_end if root_end is not None else image.stat().st_size - 1
        self.root_present = True
        self.e2fsck_results: List[tuple] = []
        self.fsck_results: List[int] = []
        self.resize_outputs: List[str] = []
        self.calls: List[List[str]] = []
        self.attached: Dict[str, int] = {}

    def tool_calls(self, tool: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == tool]

    @property
    def partition_edits(self) -> List[List[str]]:
        return [
            call
            for call in self.calls
            if call[0] == "parted" and ("rm" in call or "mkpart" in call)
        ]

    def __call__(self, command, *args, **kwargs):
        command = [str(part) for part in command]
        if command[0] == "sudo":
            command = command[1:]
        tool = os.path.basename(command[0])
        argv = [tool, *command[1:]]
        self.calls.append(argv)
        handler = getattr(self, f"_{tool}")
        return handler(argv[1:])

    def _result(self, argv, returncode=0, stdout="", stderr=""):
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)

    def _losetup(self, args):
        if args[:2] == ["-f", "--show"]:
            device = f"/dev/loop{len(self.attached)}"
            self.attached[device] = int(args[args.index("-o") + 1])
            return self._result(args, stdout=f"{device}\n")
        if args[0] == "-d":
            self.attached.pop(args[1], None)
            return self._result(args)
        return self._result(args, returncode=0 if args[0] in self.attached else 1)

    def _parted(self, args):
        if "print" in args:
            size = self.image.stat().st_size
            output = parted_output(str(self.image), size, self.root_end)
            if not self.root_present:
                output = "\n".join(output.splitlines()[:-1]) + "\n"
            return self._result(args, stdout=output)
        if "rm" in args:
            self.root_present = False
            return self._result(args)
        if "mkpart" in args:
            self.root_end = int(args[-1])
            self.root_present = True
            return self._result(args)
        return self._result(args, returncode=1, stderr="unknown parted command")

    def _e2fsck(self, args):
        returncode, output = self.e2fsck_results.pop(0)
        return self._result(args, returncode=returncode, stdout=output)

    def _fsck(self, args):
        returncode = self.fsck_results.pop(0) if self.fsck_results else 0
        return self._result(args, returncode=returncode, stdout="fsck from util-linux\n")

    def _resize2fs(self, args):
        return self._result(args, stdout=self.resize_outputs.pop(0))

    def _truncate(self, args):
        length = int(args[args.index("-s") + 1])
        os.truncate(args[-1], length)
        return self._result(args)


@pytest.fixture
def fake_tools(mocker, fake_image) -> FakeTools:
    tools = FakeTools(fake_image)
    mocker.patch("subprocess.run", side_effect=tools)
    return tools
