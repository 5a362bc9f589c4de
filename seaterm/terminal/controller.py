"""
seaterm/terminal/controller.py

Presentation model for the terminal: the output buffer, command history,
the pending 'ssh user@host' target and shell-input-forwarding mode.

Everything that changes the buffer runs on the thread that calls submit()
and process(). Worker threads (commands, the shell reader, session events)
only ever put items on a queue that process() drains.
"""

from __future__ import annotations
import queue
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import List, Tuple

from ..config import AppSettings
from ..session.base import SessionState, SessionEvent, StateChanged
from ..session.ssh import SSHSession
from ..commands.dispatcher import CommandDispatcher
from ..commands.handle import CommandHandle
from ..commands.models import (
    CommandContext, OutputEvent, PendingConnectionSlot, CLEAR_SCREEN, parse_ssh_target,
)

logger = logging.getLogger(__name__)


class LineKind(Enum):
    INPUT = auto()
    OUTPUT = auto()
    ERROR = auto()
    SYSTEM = auto()


@dataclass
class TerminalLine:
    """
    One record in the output buffer.

    An open line still accepts shell fragments; a newline closes it.
    """
    content: str
    kind: LineKind = LineKind.OUTPUT
    timestamp: datetime = field(default_factory=datetime.now)
    open: bool = False

    @property
    def display(self) -> str:
        if self.kind == LineKind.INPUT:
            return f"> {self.content}"
        return self.content


# Shell-mode tokens translated to control bytes
CONTROL_KEYS = {
    "ctrl-c": "\x03",
    "ctrl-d": "\x04",
    "ctrl-z": "\x1a",
    "tab": "\t",
}

SHELL_EXIT_TOKENS = ("exit", "logout", "ssh-shell-end")

LOGIN_COMMANDS = ("ssh-login", "ssh-key")

WELCOME_BANNER = """\
+--------------------------------------------+
|  seaterm - SSH terminal                    |
|  Type 'help' for available commands        |
+--------------------------------------------+"""


class TerminalController:
    """
    Drives one SSHSession from line input.

    Usage:
        controller = TerminalController(session)
        controller.submit("ssh alice@10.0.0.5 -p 2222")
        controller.submit("ssh-login secret")
        while controller.is_executing:
            controller.process(timeout=0.1)
    """

    POLL_INTERVAL = 0.05

    def __init__(
        self,
        session: SSHSession,
        dispatcher: CommandDispatcher = None,
        settings: AppSettings = None,
    ):
        self.session = session
        self.settings = settings or session.settings
        self.dispatcher = dispatcher or CommandDispatcher(session, self.settings)

        self.lines: List[TerminalLine] = []
        # Bumped on every clear so renderers know to start over
        self.generation = 0

        self.history: List[str] = []
        self._history_index = 0

        self.pending = PendingConnectionSlot(self.settings.pending_connection_ttl)
        self.shell_mode = False

        self._events: "queue.Queue[Tuple[str, object]]" = queue.Queue()
        self._handles: List[CommandHandle] = []

        session.set_shell_handlers(self._on_shell_output, self._on_shell_error)
        session.set_event_handler(self._on_session_event)

        self.show_welcome()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def status_line(self) -> str:
        if self.session.is_connected:
            return f"[SSH: {self.session.connection_info()}]"
        return ""

    @property
    def is_executing(self) -> bool:
        """An async command is still in flight (or its events are undelivered)."""
        return any(not handle.completed for handle in self._handles)

    @property
    def idle(self) -> bool:
        """Nothing running and no queued input or events."""
        return not self.is_executing and self._events.empty()

    @property
    def prompt(self) -> str:
        if self.shell_mode:
            return ""
        return "$ "

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    def submit(self, line: str) -> None:
        """Handle one line of user input. Call from the coordination thread."""
        raw = (line or "").rstrip("\r\n")
        text = raw.strip()

        if self.shell_mode and not self.session.is_shell_active:
            self._leave_shell_mode()

        if self.shell_mode:
            self._submit_to_shell(raw, text)
            return

        if not text:
            return

        self._add_line(text, LineKind.INPUT)
        self._remember(text)

        command, args = self.dispatcher.parse(text)

        if command == "ssh" and not self.session.is_connected and not self.dispatcher.busy:
            target = parse_ssh_target(args, self.settings.default_port)
            if target is not None:
                self.pending.stage(target)
                logger.debug(f"Pending connection {target.target}")

        context = CommandContext(pending=self.pending.peek(), local_root=self.settings.resolve_local_root())

        handle = self.dispatcher.execute_async(text, context=context)
        if handle is not None:
            self._handles.append(handle)
            self._drain_handles()
            return

        result = self.dispatcher.execute(text, context)
        if result.output == CLEAR_SCREEN:
            self.clear()
        elif result.output:
            self._add_line(result.output, LineKind.ERROR if result.is_error else LineKind.OUTPUT)

    def _submit_to_shell(self, raw: str, text: str) -> None:
        if text:
            self._remember(text)

        token = text.lower()
        if token in CONTROL_KEYS:
            self.session.write_to_shell(CONTROL_KEYS[token])
            return

        if token in SHELL_EXIT_TOKENS:
            self.session.close_shell()
            self._leave_shell_mode()
            self._add_line("Interactive shell ended.", LineKind.SYSTEM)
            return

        self.session.write_to_shell(raw + "\n")

    def post(self, line: str) -> None:
        """Queue a line from another thread; process() submits it."""
        self._events.put(("input", line))

    def resize(self, cols: int, rows: int) -> None:
        self.session.resize_terminal(cols, rows)

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def _remember(self, text: str) -> None:
        if not self.history or self.history[-1] != text:
            self.history.append(text)
            overflow = len(self.history) - self.settings.history_size
            if overflow > 0:
                del self.history[:overflow]
        self._history_index = len(self.history)

    def history_up(self) -> str:
        """Previous history entry; stays on the oldest one."""
        if not self.history:
            return ""
        if self._history_index > 0:
            self._history_index -= 1
        return self.history[self._history_index]

    def history_down(self) -> str:
        """Next history entry; empty once past the newest."""
        if not self.history:
            return ""
        if self._history_index < len(self.history) - 1:
            self._history_index += 1
            return self.history[self._history_index]
        self._history_index = len(self.history)
        return ""

    # -------------------------------------------------------------------------
    # Coordination
    # -------------------------------------------------------------------------

    def process(self, timeout: float = 0.0) -> bool:
        """
        Apply everything other threads have produced.

        Waits up to timeout for something to arrive. Returns True if the
        buffer or mode changed.
        """
        deadline = time.monotonic() + timeout
        while True:
            changed = self._process_pending()
            remaining = deadline - time.monotonic()
            if changed or remaining <= 0:
                return changed
            try:
                item = self._events.get(timeout=min(remaining, self.POLL_INTERVAL))
            except queue.Empty:
                continue
            self._apply(item)
            self._process_pending()
            return True

    def run_until_idle(self, timeout: float = 10.0) -> bool:
        """Process until no command is in flight. False on timeout."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            self.process(timeout=self.POLL_INTERVAL)
            if not self.is_executing and self._events.empty():
                return True
        return False

    def _process_pending(self) -> bool:
        changed = False
        while True:
            try:
                item = self._events.get_nowait()
            except queue.Empty:
                break
            self._apply(item)
            changed = True

        if self._drain_handles():
            changed = True

        if self.shell_mode and not self.session.is_shell_active:
            self._leave_shell_mode()
            changed = True
        return changed

    def _apply(self, item: Tuple[str, object]) -> None:
        kind, payload = item
        if kind == "input":
            self.submit(payload)
        elif kind == "shell":
            self._append_fragment(payload, LineKind.OUTPUT)
        elif kind == "shell-error":
            self._add_line(payload, LineKind.ERROR)
        elif kind == "state":
            self._state_changed(payload)

    def _drain_handles(self) -> bool:
        changed = False
        for handle in list(self._handles):
            for event in handle.drain():
                self._show(event)
                changed = True
            if handle.completed:
                self._handles.remove(handle)
                self._command_finished(handle)
                changed = True
        return changed

    def _show(self, event: OutputEvent) -> None:
        if event.fragment:
            self._append_fragment(event.text, LineKind.ERROR if event.is_error else LineKind.OUTPUT)
        else:
            self._add_line(event.text, LineKind.ERROR if event.is_error else LineKind.OUTPUT)

    def _command_finished(self, handle: CommandHandle) -> None:
        logger.debug(f"Command finished: {handle.command}")
        if handle.command in LOGIN_COMMANDS and self.session.is_connected:
            self.pending.clear()
        elif handle.command == "ssh-shell" and self.session.is_shell_active:
            self.shell_mode = True
        elif handle.command == "ssh-shell-end":
            self._leave_shell_mode()

    def _state_changed(self, event: StateChanged) -> None:
        if event.new_state != SessionState.CONNECTED:
            self._leave_shell_mode()
        if event.new_state == SessionState.DISCONNECTED and event.message == "Connection lost":
            self._add_line("Connection to remote host lost.", LineKind.SYSTEM)

    def _leave_shell_mode(self) -> None:
        if self.shell_mode:
            logger.debug("Leaving shell mode")
        self.shell_mode = False
        self._close_open_line()

    # Called from the shell reader thread and connect workers

    def _on_shell_output(self, text: str) -> None:
        self._events.put(("shell", text))

    def _on_shell_error(self, message: str) -> None:
        self._events.put(("shell-error", message))

    def _on_session_event(self, event: SessionEvent) -> None:
        if isinstance(event, StateChanged):
            self._events.put(("state", event))

    # -------------------------------------------------------------------------
    # Buffer
    # -------------------------------------------------------------------------

    def show_welcome(self) -> None:
        self._add_line(WELCOME_BANNER, LineKind.SYSTEM)
        self._add_line(f"Working directory: {self.settings.resolve_local_root()}", LineKind.SYSTEM)
        self._add_line("", LineKind.SYSTEM)

    def clear(self) -> None:
        self.lines = []
        self.generation += 1
        self.show_welcome()

    def _add_line(self, content: str, kind: LineKind) -> TerminalLine:
        self._close_open_line()
        line = TerminalLine(content, kind)
        self.lines.append(line)
        return line

    def _close_open_line(self) -> None:
        if self.lines and self.lines[-1].open:
            self.lines[-1].open = False

    def _open_line(self, kind: LineKind) -> TerminalLine:
        last = self.lines[-1] if self.lines else None
        if last is not None and last.open and last.kind == kind:
            return last
        self._close_open_line()
        line = TerminalLine("", kind, open=True)
        self.lines.append(line)
        return line

    def _append_fragment(self, text: str, kind: LineKind) -> None:
        """Glue unframed output onto the current line; newlines close it."""
        if not text:
            return
        text = text.replace("\r\n", "\n").replace("\r", "")
        *complete, tail = text.split("\n")
        for piece in complete:
            line = self._open_line(kind)
            line.content += piece
            line.open = False
        if tail:
            self._open_line(kind).content += tail

    def close(self) -> None:
        """Tear the session down on shutdown."""
        self.session.disconnect()
