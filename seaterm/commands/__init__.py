"""
Command layer - parses terminal input and runs it against the session.
"""

from .models import (
    CommandResult,
    OutputEvent,
    PendingConnection,
    PendingConnectionSlot,
    CommandContext,
    CLEAR_SCREEN,
    parse_ssh_target,
)
from .handle import CommandHandle
from .dispatcher import CommandDispatcher, CommandError, tcp_probe, HELP_TEXT

__all__ = [
    "CommandResult",
    "OutputEvent",
    "PendingConnection",
    "PendingConnectionSlot",
    "CommandContext",
    "CLEAR_SCREEN",
    "parse_ssh_target",
    "CommandHandle",
    "CommandDispatcher",
    "CommandError",
    "tcp_probe",
    "HELP_TEXT",
]
