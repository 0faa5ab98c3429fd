"""Settings storage for imaging defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "SSH_IMAGER_SETTINGS_PATH",
        Path.home() / ".config" / "ssh-imager" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DEVICE = "/dev/mmcblk0"
DEFAULT_PORT = 22
DEFAULT_PREPARE_MAX_PASSES = 4
DEFAULT_RESIZE_MAX_PASSES = 10
DEFAULT_ORPHAN_REPAIR_ATTEMPTS = 2
DEFAULT_BLOCK_SIZE = 4096
DEFAULT_DATA_PARTITION = 2

DEFAULT_SETTINGS: dict[str, Any] = {
    "ssh_key": str(Path.home() / ".ssh" / "id_rsa"),
    "ssh_port": DEFAULT_PORT,
    "ssh_options": [
        "CheckHostIP=no",
        "StrictHostKeyChecking=no",
        "ConnectTimeout=3",
        "ConnectionAttempts=3",
    ],
    "keychain_dir": str(Path.home() / ".keychain"),
    "device": DEFAULT_DEVICE,
    "destination_dir": str(Path.home()),
    "dump_block_size": "1M",
    "remote_compressor": "pigz -p 2",
    "use_sudo": True,
    "data_partition_number": DEFAULT_DATA_PARTITION,
    "filesystem_block_size": DEFAULT_BLOCK_SIZE,
    "prepare_max_passes": DEFAULT_PREPARE_MAX_PASSES,
    "resize_max_passes": DEFAULT_RESIZE_MAX_PASSES,
    "orphan_repair_attempts": DEFAULT_ORPHAN_REPAIR_ATTEMPTS,
    "mail_transport": "pat",
    "mail_sender": "me@example.com",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


load_settings()
