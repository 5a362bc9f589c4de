"""
seaterm - a line-oriented terminal with an SSH remote-session core.

Layers:
- SSHSession: connect/login state machine, exec, interactive shell, SFTP
- CommandDispatcher: routes input lines to sync or async commands
- TerminalController: output buffer, pending login target, shell mode
- run_console: text-terminal front end
"""

__version__ = "0.1.0"

from .config import AppSettings, SettingsManager
from .session.base import SessionState
from .session.models import OperationResult, ErrorKind, DirectoryEntry
from .session.ssh import SSHSession
from .commands.dispatcher import CommandDispatcher
from .commands.handle import CommandHandle
from .terminal.controller import TerminalController

__all__ = [
    "AppSettings",
    "SettingsManager",
    "SessionState",
    "OperationResult",
    "ErrorKind",
    "DirectoryEntry",
    "SSHSession",
    "CommandDispatcher",
    "CommandHandle",
    "TerminalController",
]
