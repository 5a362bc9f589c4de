"""
Session management - remote session lifecycle and sub-channels.

- SSHSession: the state machine and the operations layered on it
- ShellChannel: pty-backed interactive shell
- FileTransferSession: SFTP sub-session
"""

from .base import (
    SessionState,
    SessionEvent,
    StateChanged,
)
from .models import (
    OperationResult,
    ErrorKind,
    DirectoryEntry,
)
from .ssh import SSHSession, open_transport, load_private_key
from .shell import ShellChannel
from .sftp import FileTransferSession

__all__ = [
    # States and events
    "SessionState",
    "SessionEvent",
    "StateChanged",
    # Results
    "OperationResult",
    "ErrorKind",
    "DirectoryEntry",
    # Implementations
    "SSHSession",
    "ShellChannel",
    "FileTransferSession",
    "open_transport",
    "load_private_key",
]
