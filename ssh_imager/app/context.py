from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class RunContext:
    """State shared by one backup run: the log that gets mailed at exit."""

    log_buffer: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None

    def add_log(self, message) -> None:
        text = str(message).rstrip("\n")
        if text:
            self.log_buffer.append(text)

    def log_text(self) -> str:
        return "\n".join(self.log_buffer) + ("\n" if self.log_buffer else "")
