"""
seaterm/terminal/console.py

Text-terminal front end for TerminalController.

The main thread is the coordination context: it calls process() and
renders. A reader thread blocks on input() and posts each line.
"""

from __future__ import annotations
import threading
import logging
from typing import Optional, Callable

import click

from .controller import TerminalController, LineKind

logger = logging.getLogger(__name__)

LINE_COLORS = {
    LineKind.OUTPUT: None,
    LineKind.ERROR: "red",
    LineKind.SYSTEM: "cyan",
}


class ConsoleRenderer:
    """
    Writes new buffer content to stdout.

    Remembers how far it got (line index, offset within an open line) so
    shell fragments are printed as they arrive without repeating anything.
    Input lines are skipped; the terminal already echoed them.
    """

    def __init__(self, controller: TerminalController):
        self.controller = controller
        self._generation = controller.generation
        self._index = 0
        self._offset = 0

    def render(self) -> None:
        controller = self.controller
        if controller.generation != self._generation:
            click.clear()
            self._generation = controller.generation
            self._index = 0
            self._offset = 0

        lines = controller.lines
        while self._index < len(lines):
            line = lines[self._index]
            if line.kind == LineKind.INPUT:
                self._index += 1
                continue

            text = line.display
            chunk = text[self._offset:]
            if chunk:
                click.secho(chunk, fg=LINE_COLORS.get(line.kind), nl=False)

            if line.open:
                self._offset = len(text)
                return

            click.echo()
            self._index += 1
            self._offset = 0


class InputReader(threading.Thread):
    """Reads stdin lines and posts them to the controller."""

    def __init__(
        self,
        controller: TerminalController,
        ready: threading.Event,
        stopped: threading.Event,
        read_line: Callable[[str], str] = input,
    ):
        super().__init__(name="console-input", daemon=True)
        self.controller = controller
        self.ready = ready
        self.stopped = stopped
        self._read_line = read_line
        self.prompt = ""

    def run(self) -> None:
        while not self.stopped.is_set():
            self.ready.wait()
            if self.stopped.is_set():
                break
            try:
                line = self._read_line(self.prompt)
            except EOFError:
                logger.debug("stdin closed")
                self.stopped.set()
                break
            self.controller.post(line)
            self.ready.clear()


def run_console(controller: TerminalController, read_line: Optional[Callable[[str], str]] = None) -> None:
    """
    Run the interactive terminal until stdin closes or Ctrl+C outside a shell.

    In shell mode Ctrl+C is forwarded to the remote shell instead.
    """
    renderer = ConsoleRenderer(controller)
    ready = threading.Event()
    stopped = threading.Event()
    reader = InputReader(controller, ready, stopped, read_line or input)

    renderer.render()
    reader.start()

    try:
        while not stopped.is_set():
            try:
                controller.process(timeout=0.1)
                renderer.render()

                if controller.shell_mode or controller.idle:
                    status = controller.status_line
                    reader.prompt = controller.prompt if not status else f"{status} {controller.prompt}"
                    ready.set()
            except KeyboardInterrupt:
                if not controller.shell_mode:
                    raise
                controller.post("ctrl-c")
    except KeyboardInterrupt:
        click.echo()
    finally:
        stopped.set()
        ready.set()
        controller.process()
        renderer.render()
        controller.close()
        click.secho("Session closed.", fg="cyan")
