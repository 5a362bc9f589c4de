"""
Terminal front end - presentation model and console.
"""

from .controller import (
    TerminalController,
    TerminalLine,
    LineKind,
    CONTROL_KEYS,
    SHELL_EXIT_TOKENS,
)
from .console import ConsoleRenderer, InputReader, run_console

__all__ = [
    "TerminalController",
    "TerminalLine",
    "LineKind",
    "CONTROL_KEYS",
    "SHELL_EXIT_TOKENS",
    "ConsoleRenderer",
    "InputReader",
    "run_console",
]
