"""
seaterm/commands/models.py

Values passed between the dispatcher and its callers.
"""

from __future__ import annotations
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List

# Returned by the 'clear' command; the caller wipes its display.
CLEAR_SCREEN = "__CLEAR__"


@dataclass(frozen=True)
class CommandResult:
    """Result of a synchronous command."""
    output: str
    is_error: bool = False


@dataclass(frozen=True)
class OutputEvent:
    """
    One piece of output from an asynchronous command.

    A fragment carries no line framing (streamed remote output) and is
    appended to the current line instead of starting a new one.
    """
    text: str
    is_error: bool = False
    fragment: bool = False


@dataclass(frozen=True)
class PendingConnection:
    """Target captured by 'ssh user@host' while waiting for credentials."""
    host: str
    port: int
    username: str
    created_at: float = field(default_factory=time.monotonic)

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def is_expired(self, ttl: float, now: float = None) -> bool:
        if ttl <= 0:
            return False
        now = time.monotonic() if now is None else now
        return now - self.created_at > ttl


def parse_ssh_target(args: List[str], default_port: int = 22) -> Optional[PendingConnection]:
    """
    Parse 'user@host [-p port]' (the tokens after 'ssh').

    A missing or unparsable port falls back to default_port.
    """
    if not args:
        return None

    user_host = args[0].split("@")
    if len(user_host) != 2 or not all(user_host):
        return None
    username, host = user_host

    port = default_port
    if "-p" in args:
        index = args.index("-p")
        if index + 1 < len(args):
            try:
                value = int(args[index + 1])
            except ValueError:
                value = default_port
            if 0 < value < 65536:
                port = value

    return PendingConnection(host=host, port=port, username=username)


class PendingConnectionSlot:
    """
    Holds at most one PendingConnection for the orchestrator.

    A staged target expires after ttl seconds so a stale 'ssh' can't be
    consumed by a much later, unrelated login.
    """

    def __init__(self, ttl: float = 300.0):
        self.ttl = ttl
        self._pending: Optional[PendingConnection] = None
        self._lock = threading.Lock()

    def stage(self, pending: PendingConnection) -> None:
        """Replace whatever was staged."""
        with self._lock:
            self._pending = pending

    def peek(self, now: float = None) -> Optional[PendingConnection]:
        """Current target, or None if nothing is staged or it went stale."""
        with self._lock:
            if self._pending is not None and self._pending.is_expired(self.ttl, now):
                self._pending = None
            return self._pending

    def clear(self) -> None:
        with self._lock:
            self._pending = None


@dataclass
class CommandContext:
    """Per-call state the orchestrator lends to a command."""
    pending: Optional[PendingConnection] = None
    local_root: Optional[Path] = None

    def resolve_local(self, path: str) -> Path:
        """Relative local paths are taken from local_root."""
        candidate = Path(path).expanduser()
        if candidate.is_absolute() or self.local_root is None:
            return candidate
        return self.local_root / candidate
