"""
Interactive shell sub-channel.

A pty-backed paramiko channel with a background reader thread. Every
fragment the remote produces is decoded and handed to the output handler
in arrival order; failures go to the error handler.
"""

from __future__ import annotations
import codecs
import socket
import threading
import time
import logging
from typing import Optional, Callable, Union

import paramiko

logger = logging.getLogger(__name__)

OutputHandler = Callable[[str], None]

SHELL_CLOSED_MESSAGE = "Shell session closed by remote host."


class ShellChannel:
    """
    Interactive shell on an authenticated transport.

    Owned by SSHSession; callers reach it through the session's
    start_shell / write_to_shell / resize_terminal / close_shell.
    """

    READ_BUFFER_SIZE = 65536

    def __init__(
        self,
        channel: paramiko.Channel,
        on_output: Optional[OutputHandler] = None,
        on_error: Optional[OutputHandler] = None,
        on_closed: Optional[Callable[[], None]] = None,
    ):
        self._channel = channel
        self._on_output = on_output
        self._on_error = on_error
        self._on_closed = on_closed

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stop_event = threading.Event()
        self._remote_closed = False
        self._read_thread: Optional[threading.Thread] = None

    @classmethod
    def open(
        cls,
        transport: paramiko.Transport,
        term_type: str,
        cols: int,
        rows: int,
        on_output: Optional[OutputHandler] = None,
        on_error: Optional[OutputHandler] = None,
        on_closed: Optional[Callable[[], None]] = None,
    ) -> ShellChannel:
        """Open a pty + shell on the transport and start reading."""
        channel = transport.open_session()
        try:
            channel.get_pty(term=term_type, width=cols, height=rows)
            channel.invoke_shell()
            channel.settimeout(0.1)
        except Exception:
            channel.close()
            raise

        shell = cls(channel, on_output, on_error, on_closed)
        shell.start()
        logger.info(f"Shell started ({term_type} {cols}x{rows})")
        return shell

    def start(self) -> None:
        """Start the reader thread."""
        self._stop_event.clear()
        self._read_thread = threading.Thread(target=self._read_loop, daemon=True)
        self._read_thread.start()

    @property
    def is_active(self) -> bool:
        """Channel exists and reports itself open."""
        channel = self._channel
        if channel is None or self._remote_closed:
            return False
        return not channel.closed and bool(channel.active)

    def write(self, data: Union[str, bytes]) -> None:
        """Send raw input to the shell. Never blocks on the remote."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not self.is_active:
            return
        try:
            self._channel.sendall(data)
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.error(f"Shell write error: {e}")
            self._report_error(f"Shell write error: {e}")

    def resize(self, cols: int, rows: int) -> None:
        """Tell the remote pty its new size."""
        if not self.is_active:
            return
        try:
            self._channel.resize_pty(width=cols, height=rows)
        except (OSError, EOFError, paramiko.SSHException) as e:
            logger.error(f"Resize error: {e}")

    def stop(self) -> None:
        """Stop reading and close the channel without waiting for the reader."""
        self._stop_event.set()
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Shell close error: {e}")

    def close(self) -> None:
        """Stop reading, close the channel and wait for the reader. Safe to call twice."""
        self.stop()
        thread = self._read_thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._read_thread = None

    def _report_output(self, text: str) -> None:
        if text and self._on_output:
            try:
                self._on_output(text)
            except Exception as e:
                logger.exception(f"Shell output handler error: {e}")

    def _report_error(self, message: str) -> None:
        if self._on_error:
            try:
                self._on_error(message)
            except Exception as e:
                logger.exception(f"Shell error handler error: {e}")

    def _drain(self, channel: paramiko.Channel) -> None:
        """Deliver output still buffered when the remote side finished."""
        while channel.recv_ready():
            data = channel.recv(self.READ_BUFFER_SIZE)
            if not data:
                break
            self._report_output(self._decoder.decode(data))

    def _read_loop(self) -> None:
        """Read from the channel until stopped or closed by the remote."""
        channel = self._channel
        while not self._stop_event.is_set() and channel is not None:
            try:
                if channel.recv_ready():
                    data = channel.recv(self.READ_BUFFER_SIZE)
                    if data:
                        self._report_output(self._decoder.decode(data))
                    else:
                        logger.info("Shell channel closed by remote")
                        break
                elif channel.closed or channel.exit_status_ready():
                    logger.info("Shell channel closed")
                    self._drain(channel)
                    break
                else:
                    time.sleep(0.01)

            except socket.timeout:
                continue
            except Exception as e:
                if not self._stop_event.is_set():
                    logger.exception("Shell read error")
                    self._report_error(f"Shell read error: {e}")
                break

        self._report_output(self._decoder.decode(b"", final=True))

        if not self._stop_event.is_set():
            self._remote_closed = True
            self._report_error(SHELL_CLOSED_MESSAGE)
            if self._on_closed:
                try:
                    self._on_closed()
                except Exception as e:
                    logger.exception(f"Shell close handler error: {e}")
