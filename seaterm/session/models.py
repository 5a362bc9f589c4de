"""
seaterm/session/models.py

Result types returned by session operations.
"""

from __future__ import annotations
import stat
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class ErrorKind(Enum):
    """Why a session operation failed, decided where the failure happened."""
    NOT_CONNECTED = "not_connected"
    DISCONNECTED = "disconnected"
    TRANSPORT = "transport"
    AUTHENTICATION = "authentication"
    NOT_AUTHORIZED = "not_authorized"
    SFTP_NOT_STARTED = "sftp_not_started"
    REMOTE = "remote"
    LOCAL_IO = "local_io"
    TIMEOUT = "timeout"
    INVALID_STATE = "invalid_state"


NOT_CONNECTED_MESSAGE = "ssh: not connected. Use 'ssh user@host' and 'ssh-login <password>' first."
DISCONNECTED_MESSAGE = "ssh: session disconnected (connection closed by remote host)"
SFTP_NOT_STARTED_MESSAGE = "SFTP not connected. Use 'sftp-start' first."
EMPTY_DIRECTORY = "(empty directory)"
NO_OUTPUT = "(no output)"


@dataclass(frozen=True)
class DirectoryEntry:
    """One row of a remote directory listing."""
    name: str
    is_directory: bool
    size: int
    permission_bits: int

    @classmethod
    def from_attributes(cls, attr) -> 'DirectoryEntry':
        """Build from a paramiko SFTPAttributes."""
        mode = attr.st_mode or 0
        return cls(
            name=attr.filename,
            is_directory=stat.S_ISDIR(mode),
            size=attr.st_size or 0,
            permission_bits=mode & 0o7777,
        )

    @property
    def mode_string(self) -> str:
        kind = stat.S_IFDIR if self.is_directory else stat.S_IFREG
        return stat.filemode(kind | self.permission_bits)

    def __str__(self) -> str:
        suffix = "/" if self.is_directory else ""
        return f"{self.mode_string} {self.size:>10}  {self.name}{suffix}"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a session operation."""
    ok: bool
    message: str
    error: Optional[ErrorKind] = None
    entries: Tuple[DirectoryEntry, ...] = field(default_factory=tuple)
    exit_status: Optional[int] = None

    @classmethod
    def success(cls, message: str, **kwargs) -> 'OperationResult':
        return cls(ok=True, message=message, **kwargs)

    @classmethod
    def failure(cls, error: ErrorKind, message: str) -> 'OperationResult':
        return cls(ok=False, message=message, error=error)

    @property
    def is_error(self) -> bool:
        return not self.ok

    def __repr__(self) -> str:
        status = "ok" if self.ok else f"error={self.error.value}"
        return f"<OperationResult {status} {self.message[:40]!r}>"
