"""Remote command execution on the source host over ssh.

Every remote operation goes through the system ``ssh`` client so the user's
keys, agent and known-hosts handling apply. When a keychain environment file
exists for this host (``~/.keychain/<hostname>-sh``), its agent variables
are passed to ssh so cron runs can use a passphrase-protected key.
"""

from __future__ import annotations

import os
import re
import shlex
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from ssh_imager.config import settings
from ssh_imager.domain.models import RemoteHost
from ssh_imager.exceptions import (
    DeviceSizeError,
    RemoteScriptError,
    TransferError,
)
from ssh_imager.logging import LoggerFactory

log = LoggerFactory.for_remote()
output_log = LoggerFactory.for_output()

_KEYCHAIN_ASSIGNMENT_RE = re.compile(r"^\s*([A-Z_][A-Z0-9_]*)=([^;]*);")


@dataclass(frozen=True)
class RemoteResult:
    exit_code: int
    stdout: str
    stderr: str


def parse_keychain_file(contents: str) -> dict[str, str]:
    """Extract ``VAR=value;`` assignments from a keychain sh file."""
    env: dict[str, str] = {}
    for line in contents.splitlines():
        match = _KEYCHAIN_ASSIGNMENT_RE.match(line)
        if match:
            env[match.group(1)] = match.group(2).strip().strip('"')
    return env


def load_keychain_env(keychain_dir: Optional[Path] = None) -> dict[str, str]:
    keychain_dir = Path(keychain_dir or settings.get_setting("keychain_dir"))
    keychain_file = keychain_dir / f"{socket.gethostname()}-sh"
    try:
        if keychain_file.stat().st_size == 0:
            return {}
        contents = keychain_file.read_text(encoding="utf-8")
    except OSError:
        return {}
    log.debug(f"Using keychain file {keychain_file}")
    return parse_keychain_file(contents)


class RemoteSession:
    """An authenticated ssh channel to the source host."""

    def __init__(
        self,
        remote: RemoteHost,
        *,
        options: Optional[Iterable[str]] = None,
        env: Optional[dict] = None,
    ):
        self.remote = remote
        if options is None:
            options = settings.get_setting("ssh_options", [])
        self.options = list(options)
        self._env = env

    @property
    def env(self) -> Optional[dict]:
        if self._env is None:
            keychain = load_keychain_env()
            if not keychain:
                return None
            self._env = {**os.environ, **keychain}
        return self._env

    def ssh_command(self, command: str) -> list[str]:
        args = ["ssh"]
        if self.remote.key:
            args += ["-i", str(self.remote.key)]
        for option in self.options:
            args += ["-o", option]
        args += ["-p", str(self.remote.port), self.remote.target, command]
        return args

    def run(self, command: str) -> RemoteResult:
        """Run ``command`` on the remote host and capture its output."""
        log.debug(f"Running on {self.remote.host}: {command}")
        result = subprocess.run(
            self.ssh_command(command),
            capture_output=True,
            text=True,
            env=self.env,
        )
        return RemoteResult(result.returncode, result.stdout, result.stderr)

    def query_device_size(self, device: str) -> int:
        """Size of ``device`` in bytes, via ``blockdev --getsize64``.

        Raises:
            DeviceSizeError: If the answer is not a non-negative integer
        """
        result = self.run(f"sudo blockdev --getsize64 {shlex.quote(device)}")
        if result.stderr.strip():
            log.debug(result.stderr.strip())
        value = result.stdout.strip()
        if result.exit_code != 0 or not (value.isascii() and value.isdigit()):
            raise DeviceSizeError(device, value or result.stderr.strip())
        return int(value)

    def run_script(self, command: str) -> None:
        """Run a pre/post imaging command, logging its output.

        Raises:
            RemoteScriptError: If the command exits non-zero
        """
        log.info(f'Running "{command}" on {self.remote.host}.')
        result = self.run(command)
        for stream in (result.stdout, result.stderr):
            if stream.strip():
                output_log.info(stream.strip())
        log.info(f'Finished running "{command}" on {self.remote.host}.')
        if result.exit_code != 0:
            raise RemoteScriptError(command, self.remote.host, result.exit_code)

    def run_scripts(self, commands: Iterable[str]) -> None:
        for command in commands:
            if command and command.strip():
                self.run_script(command)

    def dump_command(self, device: str) -> str:
        block_size = settings.get_setting("dump_block_size", "1M")
        compressor = settings.get_setting("remote_compressor", "pigz -p 2")
        return (
            f"sudo dd if={shlex.quote(device)} bs={block_size} 2>/dev/null "
            f"| {compressor} - 2>/dev/null"
        )

    def stream_device(self, device: str, destination: Path) -> int:
        """Stream a compressed dump of ``device`` into ``destination``.

        The device is read with dd and compressed on the remote side so less
        traffic crosses the link. Returns the number of bytes written locally.

        Raises:
            TransferError: If ssh or the remote pipeline exits non-zero
        """
        destination = Path(destination)
        command = self.ssh_command(self.dump_command(device))
        log.info(
            f"Downloading compressed-on-the-fly dd image of {device} via ssh "
            f"into local file {destination}..."
        )
        try:
            with destination.open("wb") as capture:
                result = subprocess.run(
                    command,
                    stdout=capture,
                    stderr=subprocess.PIPE,
                    text=False,
                    env=self.env,
                )
        except OSError as error:
            raise TransferError(
                f"Unable to write {destination}: {error}", destination=str(destination)
            ) from error
        stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        if stderr:
            output_log.debug(stderr)
        if result.returncode != 0:
            raise TransferError(
                f"Download FAILED (ssh exit code {result.returncode}): {stderr}",
                destination=str(destination),
            )
        written = destination.stat().st_size if destination.exists() else 0
        log.info(f"Download complete: {written} bytes.")
        return written
