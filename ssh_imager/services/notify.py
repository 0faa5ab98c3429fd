"""Best-effort mailing of the run log."""

from __future__ import annotations

import shutil
import socket
import subprocess
from datetime import datetime
from typing import Optional, Sequence

from ssh_imager.config import settings
from ssh_imager.logging import LoggerFactory

log = LoggerFactory.for_system()

TRANSPORTS = ("pat", "mail")


def build_subject(name: str, device: str, when: Optional[datetime] = None, host: Optional[str] = None) -> str:
    when = when or datetime.now()
    host = host or socket.gethostname()
    return (
        f"{name} {device} backup to {host} status for "
        f"{when:%A}, {when:%B} {when.day} {when:%Y}"
    )


def build_mail_command(
    transport: str, recipients: Sequence[str], subject: str, sender: str
) -> list[str]:
    if transport == "pat":
        return ["patmail.sh", ",".join(recipients), subject, "telnet"]
    if transport == "mail":
        return ["mail", "-s", subject, "-a", f"From: {sender}", *recipients]
    raise ValueError(f"Unknown mail transport: {transport}")


def send_log(
    log_text: str,
    recipients: Sequence[str],
    subject: str,
    *,
    transport: Optional[str] = None,
    sender: Optional[str] = None,
) -> bool:
    """Mail ``log_text`` to ``recipients``. Failures are logged, never raised."""
    if not recipients:
        return False
    transport = transport or settings.get_setting("mail_transport", "pat")
    sender = sender or settings.get_setting("mail_sender", "")
    try:
        command = build_mail_command(transport, recipients, subject, sender)
    except ValueError as error:
        log.warning(f"Log not mailed: {error}")
        return False

    if shutil.which(command[0]) is None:
        log.warning(f"Log not mailed: {command[0]} is not found")
        return False

    try:
        result = subprocess.run(command, input=log_text, capture_output=True, text=True)
    except OSError as error:
        log.warning(f"Log not mailed: {error}")
        return False
    if result.returncode != 0:
        log.warning(
            f"Log not mailed: {command[0]} exited with code {result.returncode}: "
            f"{result.stderr.strip()}"
        )
        return False
    log.debug(f"Log mailed to {', '.join(recipients)}")
    return True
