"""
seaterm/commands/dispatcher.py

Routes one line of terminal input to a command.

Two tables:
  - synchronous commands answer immediately with a CommandResult
  - asynchronous commands (anything touching the network) validate their
    preconditions on the caller's thread, then run on a daemon worker and
    report through a CommandHandle

The dispatcher holds no connection state of its own. The pending target
from 'ssh user@host' is lent in per call through CommandContext.
"""

from __future__ import annotations
import getpass
import re
import socket
import threading
import time
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Callable, Dict, List, Tuple

from ..config import AppSettings
from ..session.models import OperationResult, NO_OUTPUT, SFTP_NOT_STARTED_MESSAGE
from ..session.ssh import SSHSession
from .handle import CommandHandle, OutputCallback, CompleteCallback
from .models import (
    CommandResult, CommandContext, CLEAR_SCREEN, parse_ssh_target,
)

logger = logging.getLogger(__name__)

Probe = Callable[[str, int, float], bool]
Work = Callable[[CommandHandle], None]

PING_PORT = 80
PING_TIMEOUT = 3.0

HELP_TEXT = """\
Available commands:

SSH Commands:
  ssh user@host [-p port]   - Prepare a connection
  ssh-login <password>      - Log in with a password
  ssh-key <keyfile> [pass]  - Log in with a private key
  ssh-exec <command>        - Run a command on the server
  ssh-run <command>         - Run a command, streaming its output
  ssh-shell                 - Start an interactive shell
  ssh-shell-end             - End the interactive shell
  ssh-info                  - Show connection info
  ssh-fingerprint           - Show the server host key fingerprint
  exit                      - Disconnect the SSH session

SFTP Commands:
  sftp-start                - Start the SFTP session
  sftp-ls [path]            - List a remote directory
  sftp-get <remote> <local> - Download a file
  sftp-put <local> <remote> - Upload a file
  sftp-mkdir <path>         - Create a remote directory
  sftp-rm <path>            - Delete a remote file

Shell mode:
  ctrl-c / ctrl-d / ctrl-z  - Send interrupt / EOF / suspend
  tab                       - Send a tab (completion)
  exit, logout              - Leave the shell

Network:
  ping <host>               - Test TCP reachability (port 80)

System:
  echo [text]               - Print text
  date                      - Show the current date and time
  pwd                       - Print the local working directory
  whoami                    - Show the current user
  hostname                  - Show this machine's hostname
  uptime                    - Show system uptime

Terminal:
  clear                     - Clear the screen
  help                      - Show this help

Quick start:
  1. ssh root@192.168.1.1   - Prepare the connection
  2. ssh-login <password>   - Log in
  3. ssh-exec ls -la        - Run a remote command
  4. ssh-shell              - Start an interactive shell
  5. exit                   - Disconnect"""


class CommandError(Exception):
    """A precondition failed; the message is shown to the user as-is."""


def tcp_probe(host: str, port: int, timeout: float) -> bool:
    """True if a TCP connection to host:port opens within timeout."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as e:
        logger.debug(f"Probe {host}:{port} failed: {e}")
        return False


class CommandDispatcher:
    """
    Parses input lines and runs commands against one SSHSession.

    At most one asynchronous command runs at a time; a second one is
    answered with a 'busy' error instead of being queued.
    """

    def __init__(
        self,
        session: SSHSession,
        settings: AppSettings = None,
        probe: Probe = None,
    ):
        self.session = session
        self.settings = settings or session.settings
        self._probe = probe or tcp_probe

        self._active: Optional[CommandHandle] = None
        self._active_lock = threading.Lock()

        self._sync_commands: Dict[str, Callable[[List[str], CommandContext], CommandResult]] = {
            "echo": self._echo,
            "date": self._date,
            "help": self._help,
            "clear": self._clear,
            "pwd": self._pwd,
            "whoami": self._whoami,
            "hostname": self._hostname,
            "uptime": self._uptime,
            "exit": self._exit,
        }

        self._async_commands: Dict[str, Callable[[List[str], str, CommandContext], Work]] = {
            "ssh": self._ssh,
            "ssh-login": self._ssh_login,
            "ssh-key": self._ssh_key,
            "ssh-exec": self._ssh_exec,
            "ssh-run": self._ssh_run,
            "ssh-shell": self._ssh_shell,
            "ssh-shell-end": self._ssh_shell_end,
            "ssh-info": self._ssh_info,
            "ssh-fingerprint": self._ssh_fingerprint,
            "ping": self._ping,
            "sftp-start": self._sftp_start,
            "sftp-ls": self._sftp_ls,
            "sftp-get": self._sftp_get,
            "sftp-put": self._sftp_put,
            "sftp-mkdir": self._sftp_mkdir,
            "sftp-rm": self._sftp_rm,
        }

    # -------------------------------------------------------------------------
    # Parsing
    # -------------------------------------------------------------------------

    @staticmethod
    def parse(line: str) -> Tuple[str, List[str]]:
        """'SSH-Exec  ls -la' -> ('ssh-exec', ['ls', '-la'])."""
        parts = (line or "").split()
        if not parts:
            return "", []
        return parts[0].lower(), parts[1:]

    @staticmethod
    def _raw_arguments(line: str) -> str:
        """Everything after the command token, internal spacing kept."""
        parts = re.split(r"\s+", (line or "").strip(), maxsplit=1)
        return parts[1] if len(parts) > 1 else ""

    def is_async(self, line: str) -> bool:
        command, _ = self.parse(line)
        return command in self._async_commands

    @property
    def busy(self) -> bool:
        """An async command is still running."""
        with self._active_lock:
            return self._active is not None and not self._active.done

    @property
    def active_command(self) -> Optional[str]:
        with self._active_lock:
            if self._active is not None and not self._active.done:
                return self._active.command
            return None

    # -------------------------------------------------------------------------
    # Synchronous path
    # -------------------------------------------------------------------------

    def execute(self, line: str, context: CommandContext = None) -> CommandResult:
        """Run a synchronous command."""
        command, args = self.parse(line)
        if not command:
            return CommandResult("")

        handler = self._sync_commands.get(command)
        if handler is not None:
            return handler(args, context or CommandContext())

        if command in self._async_commands:
            return CommandResult(f"{command}: runs asynchronously; submit it through the async path")

        return CommandResult(
            f"command not found: {command}. Type 'help' for available commands.",
            is_error=True,
        )

    def _echo(self, args: List[str], context: CommandContext) -> CommandResult:
        return CommandResult(" ".join(args))

    def _date(self, args: List[str], context: CommandContext) -> CommandResult:
        return CommandResult(datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S %z"))

    def _help(self, args: List[str], context: CommandContext) -> CommandResult:
        return CommandResult(HELP_TEXT)

    def _clear(self, args: List[str], context: CommandContext) -> CommandResult:
        return CommandResult(CLEAR_SCREEN)

    def _pwd(self, args: List[str], context: CommandContext) -> CommandResult:
        return CommandResult(str(self._local_root(context)))

    def _whoami(self, args: List[str], context: CommandContext) -> CommandResult:
        return CommandResult(getpass.getuser())

    def _hostname(self, args: List[str], context: CommandContext) -> CommandResult:
        return CommandResult(socket.gethostname())

    def _uptime(self, args: List[str], context: CommandContext) -> CommandResult:
        # The monotonic clock starts at boot on Linux, macOS and Windows
        uptime = int(time.monotonic())
        hours, remainder = divmod(uptime, 3600)
        minutes, seconds = divmod(remainder, 60)
        return CommandResult(f"up {hours}:{minutes:02d}:{seconds:02d}")

    def _exit(self, args: List[str], context: CommandContext) -> CommandResult:
        if self.session.is_connected:
            self.session.disconnect()
            return CommandResult("SSH connection closed.")
        return CommandResult("")

    def _local_root(self, context: CommandContext) -> Path:
        if context is not None and context.local_root is not None:
            return context.local_root
        return self.settings.resolve_local_root()

    # -------------------------------------------------------------------------
    # Asynchronous path
    # -------------------------------------------------------------------------

    def execute_async(
        self,
        line: str,
        on_output: Optional[OutputCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        context: CommandContext = None,
    ) -> Optional[CommandHandle]:
        """
        Start an asynchronous command.

        Returns None if the line is not an async command, so the caller can
        fall back to execute(). Otherwise returns immediately with a handle;
        precondition failures come back as an already finished handle.
        """
        command, args = self.parse(line)
        prepare = self._async_commands.get(command)
        if prepare is None:
            return None

        context = context or CommandContext()
        context = CommandContext(
            pending=context.pending,
            local_root=context.local_root or self.settings.resolve_local_root(),
        )
        handle = CommandHandle(command, on_output, on_complete)

        with self._active_lock:
            running = self._active
            if running is not None and not running.done:
                logger.warning(f"Rejected '{command}' while '{running.command}' is executing")
                return self._finished(handle, f"busy: '{running.command}' is still executing")

            try:
                work = prepare(args, self._raw_arguments(line), context)
            except CommandError as e:
                return self._finished(handle, str(e))
            except Exception as e:
                logger.exception(f"Command '{command}' failed to start")
                return self._finished(handle, f"{command}: internal error: {e}")

            self._active = handle

        worker = threading.Thread(
            target=self._run, args=(handle, work), name=f"cmd-{command}", daemon=True
        )
        worker.start()
        return handle

    def _finished(self, handle: CommandHandle, message: str) -> CommandHandle:
        handle.error(message)
        handle.finish()
        return handle

    def _run(self, handle: CommandHandle, work: Work) -> None:
        """Worker body: completion is delivered exactly once whatever happens."""
        logger.debug(f"Running '{handle.command}'")
        try:
            work(handle)
        except Exception as e:
            logger.exception(f"Command '{handle.command}' crashed")
            handle.error(f"{handle.command}: internal error: {e}")
        finally:
            handle.finish()
            with self._active_lock:
                if self._active is handle:
                    self._active = None

    def _report(self, handle: CommandHandle, result: OperationResult) -> None:
        handle.emit(result.message, result.is_error)

    def _require_session(self) -> None:
        failure = self.session.ensure_usable()
        if failure is not None:
            raise CommandError(failure.message)

    def _require_sftp(self) -> None:
        if not self.session.is_sftp_active:
            raise CommandError(SFTP_NOT_STARTED_MESSAGE)
        self._require_session()

    def _pending(self, command: str, context: CommandContext):
        pending = context.pending
        if pending is None or pending.is_expired(self.settings.pending_connection_ttl):
            raise CommandError(f"{command}: no pending connection. Use 'ssh user@host' first.")
        return pending

    # --- ssh -----------------------------------------------------------------

    def _ssh(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if self.session.is_connected:
            info = self.session.connection_info()

            def report(handle: CommandHandle) -> None:
                handle.emit(
                    f"Already connected to: {info}\n"
                    "Use 'ssh-exec <command>' to run commands.\n"
                    "Use 'ssh-shell' for interactive shell.\n"
                    "Use 'exit' to disconnect."
                )
            return report

        target = parse_ssh_target(args, self.settings.default_port)
        if target is None:
            raise CommandError("ssh: invalid syntax. Usage: ssh user@host [-p port]")

        def stage(handle: CommandHandle) -> None:
            handle.emit(
                f"Ready to connect to {target.target}\n"
                "Enter password with: ssh-login <password>"
            )
        return stage

    def _ssh_login(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if not raw:
            raise CommandError("ssh-login: missing password\nUsage: ssh-login <password>")
        pending = self._pending("ssh-login", context)

        def login(handle: CommandHandle) -> None:
            handle.emit(f"Connecting to {pending.target}...")
            result = self.session.connect(pending.host, pending.port, pending.username, raw)
            self._report(handle, result)
        return login

    def _ssh_key(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if not args:
            raise CommandError("ssh-key: missing key file\nUsage: ssh-key <keyfile> [passphrase]")
        pending = self._pending("ssh-key", context)
        key_path = context.resolve_local(args[0])
        passphrase = args[1] if len(args) > 1 else None

        def login(handle: CommandHandle) -> None:
            try:
                key_data = key_path.read_text()
            except (OSError, UnicodeDecodeError) as e:
                handle.error(f"ssh-key: cannot read key file '{key_path}': {getattr(e, 'strerror', None) or e}")
                return
            handle.emit(f"Connecting to {pending.target} with key {key_path.name}...")
            result = self.session.connect_with_key(
                pending.host, pending.port, pending.username, key_data, passphrase
            )
            self._report(handle, result)
        return login

    def _ssh_exec(self, args: List[str], raw: str, context: CommandContext) -> Work:
        self._require_session()
        if not raw:
            raise CommandError("ssh-exec: missing command\nUsage: ssh-exec <command>")

        def run(handle: CommandHandle) -> None:
            handle.emit(f"$ {raw}")
            self._report(handle, self.session.execute_command(raw))
        return run

    def _ssh_run(self, args: List[str], raw: str, context: CommandContext) -> Work:
        self._require_session()
        if not raw:
            raise CommandError("ssh-run: missing command\nUsage: ssh-run <command>")

        def run(handle: CommandHandle) -> None:
            handle.emit(f"$ {raw}")
            streamed = []

            def on_chunk(text: str) -> None:
                streamed.append(text)
                handle.emit(text, fragment=True)

            result = self.session.execute_command_streaming(raw, on_chunk)
            if result.is_error:
                self._report(handle, result)
            elif not streamed:
                handle.emit(NO_OUTPUT)
            elif result.exit_status:
                handle.emit(f"[exit status {result.exit_status}]")
        return run

    def _ssh_shell(self, args: List[str], raw: str, context: CommandContext) -> Work:
        self._require_session()

        def start(handle: CommandHandle) -> None:
            handle.emit("Starting interactive shell...")
            if self.session.start_shell():
                handle.emit(
                    "Interactive shell started. Type commands directly.\n"
                    "Use 'ctrl-c' to interrupt, 'exit' or 'ssh-shell-end' to leave shell mode."
                )
            else:
                handle.error("Failed to start interactive shell.")
        return start

    def _ssh_shell_end(self, args: List[str], raw: str, context: CommandContext) -> Work:
        def end(handle: CommandHandle) -> None:
            self.session.close_shell()
            handle.emit("Interactive shell ended.")
        return end

    def _ssh_info(self, args: List[str], raw: str, context: CommandContext) -> Work:
        def info(handle: CommandHandle) -> None:
            if self.session.is_connected:
                handle.emit(
                    f"Connection: {self.session.connection_info()}\n"
                    f"Shell Active: {'Yes' if self.session.is_shell_active else 'No'}\n"
                    f"SFTP Active: {'Yes' if self.session.is_sftp_active else 'No'}"
                )
            else:
                handle.emit("Not connected to any SSH server.")
        return info

    def _ssh_fingerprint(self, args: List[str], raw: str, context: CommandContext) -> Work:
        def fingerprint(handle: CommandHandle) -> None:
            value = self.session.fingerprint()
            if value:
                handle.emit(f"Server fingerprint: {value}")
            else:
                handle.emit("Not connected to any SSH server.")
        return fingerprint

    # --- network -------------------------------------------------------------

    def _ping(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if not args:
            raise CommandError("ping: usage: ping <host>")
        host = args[0]

        def ping(handle: CommandHandle) -> None:
            handle.emit(f"PING {host}...")
            if self._probe(host, PING_PORT, PING_TIMEOUT):
                handle.emit(f"Host {host} is reachable on port {PING_PORT}")
            else:
                handle.emit(f"Host {host} is not reachable")
        return ping

    # --- sftp ----------------------------------------------------------------

    def _sftp_start(self, args: List[str], raw: str, context: CommandContext) -> Work:
        self._require_session()

        def start(handle: CommandHandle) -> None:
            self._report(handle, self.session.start_sftp())
        return start

    def _sftp_ls(self, args: List[str], raw: str, context: CommandContext) -> Work:
        self._require_sftp()
        path = args[0] if args else "."

        def listing(handle: CommandHandle) -> None:
            self._report(handle, self.session.list_remote_directory(path))
        return listing

    def _sftp_get(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if len(args) < 2:
            raise CommandError("sftp-get: missing arguments\nUsage: sftp-get <remote_path> <local_path>")
        self._require_sftp()
        remote_path, local_path = args[0], context.resolve_local(args[1])

        def download(handle: CommandHandle) -> None:
            self._report(handle, self.session.download_file(remote_path, local_path))
        return download

    def _sftp_put(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if len(args) < 2:
            raise CommandError("sftp-put: missing arguments\nUsage: sftp-put <local_path> <remote_path>")
        self._require_sftp()
        local_path, remote_path = context.resolve_local(args[0]), args[1]

        def upload(handle: CommandHandle) -> None:
            self._report(handle, self.session.upload_file(local_path, remote_path))
        return upload

    def _sftp_mkdir(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if not args:
            raise CommandError("sftp-mkdir: missing path\nUsage: sftp-mkdir <path>")
        self._require_sftp()
        path = args[0]

        def mkdir(handle: CommandHandle) -> None:
            self._report(handle, self.session.create_remote_directory(path))
        return mkdir

    def _sftp_rm(self, args: List[str], raw: str, context: CommandContext) -> Work:
        if not args:
            raise CommandError("sftp-rm: missing path\nUsage: sftp-rm <path>")
        self._require_sftp()
        path = args[0]

        def remove(handle: CommandHandle) -> None:
            self._report(handle, self.session.delete_remote_file(path))
        return remove
