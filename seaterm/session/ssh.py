"""
SSH session implementation using Paramiko.

One SSHSession is one remote session: its lifecycle state, the transport,
and the shell / sftp sub-channels layered on it. It is the only place that
mutates any of these.
"""

from __future__ import annotations
import base64
import codecs
import hashlib
import socket
import threading
import time
import logging
import warnings
from io import StringIO
from typing import Optional, Callable, List, Union

import paramiko

from ..config import AppSettings
from .base import SessionState, SessionEvent, StateChanged, ALLOWED_TRANSITIONS
from .models import (
    OperationResult, ErrorKind,
    NOT_CONNECTED_MESSAGE, DISCONNECTED_MESSAGE, SFTP_NOT_STARTED_MESSAGE, NO_OUTPUT,
)
from .shell import ShellChannel
from .sftp import FileTransferSession

logger = logging.getLogger(__name__)


# =============================================================================
# Algorithm Configuration
# =============================================================================
# Broad compatibility with older sshd builds and embedded devices while still
# preferring modern algorithms.

PREFERRED_CIPHERS = (
    "aes128-ctr",
    "aes192-ctr",
    "aes256-ctr",
    "aes128-gcm@openssh.com",
    "aes256-gcm@openssh.com",
    "chacha20-poly1305@openssh.com",
    "aes128-cbc",
    "aes256-cbc",
)

PREFERRED_KEX = (
    "curve25519-sha256",
    "curve25519-sha256@libssh.org",
    "ecdh-sha2-nistp256",
    "ecdh-sha2-nistp384",
    "ecdh-sha2-nistp521",
    "diffie-hellman-group14-sha256",
    "diffie-hellman-group16-sha512",
    "diffie-hellman-group-exchange-sha256",
    "diffie-hellman-group14-sha1",
)

PREFERRED_KEYS = (
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "rsa-sha2-512",
    "rsa-sha2-256",
    "ssh-rsa",
)

# Flag to track if we've applied global transport settings
_transport_configured = False

# Errors that mean the network or the SSH layer failed
TRANSPORT_ERRORS = (OSError, EOFError, paramiko.SSHException)

TransportFactory = Callable[[str, int, float, int], paramiko.Transport]


def _apply_global_transport_settings() -> None:
    """
    Narrow Paramiko's algorithm preferences to PREFERRED_*.

    Only algorithms this Paramiko build supports are kept. Runs once.
    """
    global _transport_configured

    if _transport_configured:
        return

    warnings.filterwarnings('ignore', category=DeprecationWarning, module='paramiko')

    try:
        available_ciphers = set(paramiko.Transport._cipher_info.keys())
        available_kex = set(paramiko.Transport._kex_info.keys())
        available_keys = set(paramiko.Transport._key_info.keys())

        ciphers = tuple(c for c in PREFERRED_CIPHERS if c in available_ciphers)
        kex = tuple(k for k in PREFERRED_KEX if k in available_kex)
        keys = tuple(k for k in PREFERRED_KEYS if k in available_keys)

        if ciphers:
            paramiko.Transport._preferred_ciphers = ciphers
        if kex:
            paramiko.Transport._preferred_kex = kex
        if keys:
            paramiko.Transport._preferred_keys = keys

        logger.info(
            f"Applied transport settings: "
            f"{len(ciphers)} ciphers, {len(kex)} kex, {len(keys)} keys"
        )
    except Exception as e:
        logger.warning(f"Could not apply transport settings: {e}")

    _transport_configured = True


def open_transport(host: str, port: int, timeout: float, keepalive_interval: int = 0) -> paramiko.Transport:
    """
    Open a TCP connection and run the SSH handshake (no authentication).

    Raises OSError for network failures, SSHException for negotiation failures.
    """
    sock = socket.create_connection((host, port), timeout=timeout)
    try:
        transport = paramiko.Transport(sock)
    except Exception:
        sock.close()
        raise

    try:
        transport.start_client(timeout=timeout)
    except Exception:
        transport.close()
        raise

    if keepalive_interval:
        transport.set_keepalive(keepalive_interval)
    return transport


def load_private_key(key_data: str, passphrase: str = None) -> paramiko.PKey:
    """
    Load an SSH private key from PEM/OpenSSH text.

    Tries RSA, Ed25519 and ECDSA in turn.
    """
    key_file = StringIO(key_data)

    key_classes = [
        paramiko.RSAKey,
        paramiko.Ed25519Key,
        paramiko.ECDSAKey,
    ]

    for key_class in key_classes:
        try:
            key_file.seek(0)
            return key_class.from_private_key(key_file, password=passphrase)
        except paramiko.PasswordRequiredException:
            raise
        except (paramiko.SSHException, ValueError):
            continue

    raise paramiko.SSHException("Unable to parse private key")


def _describe(exc: BaseException) -> str:
    if isinstance(exc, OSError) and exc.strerror:
        return exc.strerror
    return str(exc) or exc.__class__.__name__


class SSHSession:
    """
    One remote SSH session.

    Thread-safe. connect / execute / sftp calls block and are meant to run
    on a worker thread; write_to_shell and resize_terminal never block.
    State changes are reported through the event handler.
    """

    READ_BUFFER_SIZE = 65536

    def __init__(
        self,
        settings: AppSettings = None,
        transport_factory: TransportFactory = None,
        sftp_client_factory: Callable[[paramiko.Transport], paramiko.SFTPClient] = None,
    ):
        """
        Initialize SSH session.

        Args:
            settings: Timeouts and pty defaults
            transport_factory: Opens a started (unauthenticated) transport;
                defaults to open_transport
            sftp_client_factory: Opens an SFTPClient on a transport
        """
        _apply_global_transport_settings()

        self.settings = settings or AppSettings()
        self._transport_factory = transport_factory or open_transport
        self._sftp_client_factory = sftp_client_factory

        self._state = SessionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._error_reason = ""

        self._host = ""
        self._port = self.settings.default_port
        self._username = ""

        # Guards the transport and sub-channel handles
        self._channel_lock = threading.RLock()
        self._transport: Optional[paramiko.Transport] = None
        self._shell: Optional[ShellChannel] = None
        self._sftp: Optional[FileTransferSession] = None

        self._event_handler: Optional[Callable[[SessionEvent], None]] = None
        self._shell_output_handler: Optional[Callable[[str], None]] = None
        self._shell_error_handler: Optional[Callable[[str], None]] = None

        self._cols = self.settings.term_cols
        self._rows = self.settings.term_rows

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current session state (thread-safe)."""
        with self._state_lock:
            return self._state

    @property
    def error_reason(self) -> str:
        """Reason for the last ERROR state, empty otherwise."""
        with self._state_lock:
            return self._error_reason

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def username(self) -> str:
        return self._username

    @property
    def is_connected(self) -> bool:
        """Did the last connect succeed (no liveness probe)?"""
        return self.state == SessionState.CONNECTED

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.CONNECTED

    def set_event_handler(self, handler: Callable[[SessionEvent], None]) -> None:
        """Set callback for session events."""
        self._event_handler = handler

    def _emit(self, event: SessionEvent) -> None:
        """Emit event to handler."""
        if self._event_handler:
            try:
                self._event_handler(event)
            except Exception as e:
                logger.exception(f"Event handler error: {e}")

    def _set_state(self, new_state: SessionState, message: str = "") -> bool:
        """Update state and emit event. Refuses transitions the machine does not allow."""
        with self._state_lock:
            old_state = self._state
            if new_state not in ALLOWED_TRANSITIONS[old_state]:
                logger.warning(f"Ignoring state change {old_state.name} -> {new_state.name}")
                return False
            self._state = new_state
            self._error_reason = message if new_state == SessionState.ERROR else ""
        logger.info(f"Session state: {old_state.name} -> {new_state.name} {message}")
        self._emit(StateChanged(old_state, new_state, message))
        return True

    def connection_info(self) -> str:
        """'user@host:port' for a connected session."""
        if not self.is_connected:
            return "Not connected"
        return f"{self._username}@{self._host}:{self._port}"

    # -------------------------------------------------------------------------
    # Connect / disconnect
    # -------------------------------------------------------------------------

    def connect(self, host: str, port: int, username: str, password: str) -> OperationResult:
        """
        Connect with password auth, falling back to keyboard-interactive.

        Blocks until authenticated or failed.
        """
        def authenticate(transport: paramiko.Transport) -> None:
            self._auth_password(transport, username, password)

        return self._connect(host, port, username, authenticate)

    def connect_with_key(
        self,
        host: str,
        port: int,
        username: str,
        private_key: str,
        passphrase: str = None,
    ) -> OperationResult:
        """Connect with public-key auth. private_key is the key file text."""
        def authenticate(transport: paramiko.Transport) -> None:
            try:
                pkey = load_private_key(private_key, passphrase)
            except paramiko.PasswordRequiredException:
                raise paramiko.AuthenticationException("Private key is encrypted; passphrase required")
            except (paramiko.SSHException, ValueError) as e:
                raise paramiko.AuthenticationException(str(e))
            transport.auth_publickey(username, pkey)

        return self._connect(host, port, username, authenticate)

    def _connect(
        self,
        host: str,
        port: int,
        username: str,
        authenticate: Callable[[paramiko.Transport], None],
    ) -> OperationResult:
        """Drive DISCONNECTED -> CONNECTING -> AUTHENTICATING -> CONNECTED."""
        with self._state_lock:
            old_state = self._state
            if old_state not in (SessionState.DISCONNECTED, SessionState.ERROR):
                logger.warning(f"Cannot connect from state {old_state.name}")
                return OperationResult.failure(
                    ErrorKind.INVALID_STATE,
                    f"ssh: cannot connect while {old_state.name.lower()}",
                )
            # Target and state change together so no reader sees a half-set session
            self._host, self._port, self._username = host, port, username
            self._state = SessionState.CONNECTING
            self._error_reason = ""

        target = f"{username}@{host}:{port}"
        logger.info(f"Session state: {old_state.name} -> CONNECTING {target}")
        self._emit(StateChanged(old_state, SessionState.CONNECTING, target))

        try:
            transport = self._transport_factory(
                host, port, self.settings.connect_timeout, self.settings.keepalive_interval
            )
        except TRANSPORT_ERRORS as e:
            return self._fail(
                ErrorKind.TRANSPORT,
                f"ssh: connect to host {host} port {port}: {_describe(e)}",
            )

        with self._channel_lock:
            self._transport = transport
        transport.auth_timeout = self.settings.auth_timeout

        if not self._set_state(SessionState.AUTHENTICATING):
            # disconnect() raced us
            transport.close()
            return OperationResult.failure(ErrorKind.INVALID_STATE, "ssh: connection aborted")

        try:
            authenticate(transport)
        except paramiko.AuthenticationException as e:
            return self._fail(
                ErrorKind.AUTHENTICATION,
                f"ssh: authentication failed for {username}@{host}: {e}",
            )
        except TRANSPORT_ERRORS as e:
            return self._fail(
                ErrorKind.TRANSPORT,
                f"ssh: connection to {host} port {port} lost during authentication: {_describe(e)}",
            )

        if not transport.is_authenticated():
            return self._fail(
                ErrorKind.AUTHENTICATION,
                f"ssh: authentication failed for {username}@{host}",
            )

        if not self._set_state(SessionState.CONNECTED, target):
            return OperationResult.failure(ErrorKind.INVALID_STATE, "ssh: connection aborted")

        logger.debug(
            f"Negotiated: cipher={getattr(transport, 'remote_cipher', None)}, "
            f"mac={getattr(transport, 'remote_mac', None)}"
        )
        return OperationResult.success(f"Connected to {target}")

    def _auth_password(self, transport: paramiko.Transport, username: str, password: str) -> None:
        """Password auth, then keyboard-interactive answering every prompt with the password."""
        try:
            transport.auth_password(username, password, fallback=False)
            if transport.is_authenticated():
                return
            password_error = paramiko.AuthenticationException("Authentication failed.")
        except paramiko.AuthenticationException as e:
            password_error = e
            logger.debug(f"Password auth failed ({e}), trying keyboard-interactive")

        def answer_prompts(title, instructions, prompts):
            return [password for _ in prompts]

        try:
            transport.auth_interactive(username, answer_prompts)
        except paramiko.BadAuthenticationType:
            # Server does not offer keyboard-interactive; the password error says more
            raise password_error
        except paramiko.AuthenticationException as e:
            logger.debug(f"Keyboard-interactive auth failed: {e}")
            raise

    def _fail(self, kind: ErrorKind, message: str) -> OperationResult:
        """Abort a connect attempt: close what was opened, wipe the target, enter ERROR."""
        logger.error(message)
        with self._channel_lock:
            shell = self._teardown()
        self._join_shell(shell)
        self._set_state(SessionState.ERROR, message)
        return OperationResult.failure(kind, message)

    def disconnect(self) -> None:
        """Close sub-channels and transport, wipe the target. Idempotent."""
        with self._channel_lock:
            nothing_open = self._transport is None and self._shell is None and self._sftp is None
            if nothing_open and self.state == SessionState.DISCONNECTED:
                return
            logger.info("Disconnecting...")
            shell = self._teardown()
        self._join_shell(shell)
        self._set_state(SessionState.DISCONNECTED, "User disconnected")

    def _teardown(self) -> Optional[ShellChannel]:
        """
        Close everything and clear the target. Caller holds _channel_lock.

        The shell is only stopped here; the caller joins its reader with
        _join_shell() after releasing the lock.
        """
        shell, self._shell = self._shell, None
        if shell is not None:
            shell.stop()

        if self._sftp:
            self._sftp.close()
            self._sftp = None

        if self._transport:
            try:
                self._transport.close()
            except Exception as e:
                logger.debug(f"Transport close error: {e}")
            self._transport = None

        self._host = ""
        self._port = self.settings.default_port
        self._username = ""
        return shell

    @staticmethod
    def _join_shell(shell: Optional[ShellChannel]) -> None:
        if shell is not None:
            shell.close()

    # -------------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------------

    def is_usable(self) -> bool:
        """Connected and the transport still alive. Tears down a dead session."""
        return self.ensure_usable() is None

    def ensure_usable(self) -> Optional[OperationResult]:
        """None if usable, otherwise the failure to report."""
        if self.state != SessionState.CONNECTED:
            return OperationResult.failure(ErrorKind.NOT_CONNECTED, NOT_CONNECTED_MESSAGE)

        transport = self._transport
        if transport is None or not transport.is_active():
            self._connection_lost()
            return OperationResult.failure(ErrorKind.DISCONNECTED, DISCONNECTED_MESSAGE)
        return None

    def _connection_lost(self) -> None:
        with self._channel_lock:
            if self.state != SessionState.CONNECTED:
                return
            logger.warning("Transport is no longer active")
            shell = self._teardown()
        self._join_shell(shell)
        self._set_state(SessionState.DISCONNECTED, "Connection lost")

    def _settle(self, result: OperationResult) -> OperationResult:
        """A failed operation may have been the first sign the peer went away."""
        if result.ok:
            return result
        transport = self._transport
        if transport is not None and not transport.is_active():
            self._connection_lost()
            return OperationResult.failure(ErrorKind.DISCONNECTED, DISCONNECTED_MESSAGE)
        return result

    def fingerprint(self) -> Optional[str]:
        """OpenSSH-style SHA256 fingerprint of the server host key."""
        if self.ensure_usable() is not None:
            return None
        key = self._transport.get_remote_server_key()
        digest = hashlib.sha256(key.asbytes()).digest()
        encoded = base64.b64encode(digest).decode("ascii").rstrip("=")
        return f"{key.get_name()} SHA256:{encoded}"

    def server_public_key(self) -> Optional[str]:
        """Server host key in authorized_keys format."""
        if self.ensure_usable() is not None:
            return None
        key = self._transport.get_remote_server_key()
        return f"{key.get_name()} {key.get_base64()}"

    # -------------------------------------------------------------------------
    # Remote commands
    # -------------------------------------------------------------------------

    def execute_command(self, command: str) -> OperationResult:
        """Run a command to completion and return all of its output."""
        failure = self.ensure_usable()
        if failure:
            return failure
        return self._run(command, self.settings.exec_timeout)

    def execute_command_streaming(self, command: str, on_chunk: Callable[[str], None]) -> OperationResult:
        """Run a command, handing each output fragment to on_chunk as it arrives."""
        failure = self.ensure_usable()
        if failure:
            return failure
        return self._run(command, self.settings.stream_timeout, on_chunk)

    def execute_commands(self, commands: List[str]) -> List[OperationResult]:
        """Run commands one after another; stops once the session is gone."""
        results = []
        for command in commands:
            result = self.execute_command(command)
            results.append(result)
            if result.error in (ErrorKind.NOT_CONNECTED, ErrorKind.DISCONNECTED):
                break
        return results

    def current_remote_directory(self) -> OperationResult:
        return self.execute_command("pwd")

    def _run(
        self,
        command: str,
        timeout: float,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> OperationResult:
        logger.debug(f"exec ({timeout:g}s): {command}")
        try:
            channel = self._transport.open_session()
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except TRANSPORT_ERRORS as e:
            return self._settle(OperationResult.failure(
                ErrorKind.REMOTE, f"ssh-exec: cannot run command: {_describe(e)}"
            ))

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        chunks: List[str] = []

        def collect(text: str) -> None:
            if text:
                chunks.append(text)
                if on_chunk:
                    on_chunk(text)

        deadline = time.monotonic() + timeout
        try:
            while True:
                if channel.recv_ready():
                    data = channel.recv(self.READ_BUFFER_SIZE)
                    if not data:
                        break
                    collect(decoder.decode(data))
                elif channel.exit_status_ready():
                    break
                elif time.monotonic() > deadline:
                    logger.warning(f"Command timed out after {timeout:g}s: {command}")
                    return self._settle(OperationResult.failure(
                        ErrorKind.TIMEOUT, f"ssh-exec: command timed out after {timeout:g}s"
                    ))
                else:
                    time.sleep(0.01)

            # The last output can land together with the exit status
            while channel.recv_ready():
                data = channel.recv(self.READ_BUFFER_SIZE)
                if not data:
                    break
                collect(decoder.decode(data))

            collect(decoder.decode(b"", final=True))
            exit_status = channel.recv_exit_status()
        except TRANSPORT_ERRORS as e:
            return self._settle(OperationResult.failure(
                ErrorKind.REMOTE, f"ssh-exec: {_describe(e)}"
            ))
        finally:
            channel.close()

        output = "".join(chunks).rstrip("\r\n")
        message = output or NO_OUTPUT
        if exit_status:
            message += f"\n[exit status {exit_status}]"
        return OperationResult.success(message, exit_status=exit_status)

    # -------------------------------------------------------------------------
    # Interactive shell
    # -------------------------------------------------------------------------

    def set_shell_handlers(
        self,
        on_output: Optional[Callable[[str], None]],
        on_error: Optional[Callable[[str], None]],
    ) -> None:
        """Where shell output fragments and shell errors are delivered."""
        self._shell_output_handler = on_output
        self._shell_error_handler = on_error

    def _shell_output(self, text: str) -> None:
        if self._shell_output_handler:
            self._shell_output_handler(text)

    def _shell_error(self, message: str) -> None:
        if self._shell_error_handler:
            self._shell_error_handler(message)

    @property
    def is_shell_active(self) -> bool:
        shell = self._shell
        return shell is not None and shell.is_active

    def start_shell(self) -> bool:
        """Open a pty-backed shell. Returns False (and reports why) on failure."""
        failure = self.ensure_usable()
        if failure:
            self._shell_error(failure.message)
            return False

        stale = None
        with self._channel_lock:
            if self._shell is not None:
                if self._shell.is_active:
                    return True
                stale, self._shell = self._shell, None
                stale.stop()

            try:
                self._shell = ShellChannel.open(
                    self._transport,
                    self.settings.term_type,
                    self._cols,
                    self._rows,
                    on_output=self._shell_output,
                    on_error=self._shell_error,
                    on_closed=self._on_shell_closed,
                )
            except TRANSPORT_ERRORS as e:
                logger.error(f"Failed to start shell: {e}")
                result = self._settle(OperationResult.failure(
                    ErrorKind.REMOTE, f"Failed to start shell: {_describe(e)}"
                ))
                self._shell_error(result.message)
                started = False
            else:
                started = True
        self._join_shell(stale)
        return started

    def _on_shell_closed(self) -> None:
        """Reader thread saw the remote end close the shell."""
        with self._channel_lock:
            shell = self._shell
            if shell is None or shell.is_active:
                return
            self._shell = None
        shell.close()

    def write_to_shell(self, data: Union[str, bytes]) -> None:
        """Fire-and-forget input to the shell; no-op without one."""
        shell = self._shell
        if shell is not None:
            shell.write(data)

    def resize_terminal(self, cols: int, rows: int) -> None:
        """Propagate a terminal size change; no-op without a shell."""
        self._cols = cols
        self._rows = rows
        shell = self._shell
        if shell is not None:
            shell.resize(cols, rows)

    def close_shell(self) -> None:
        """Close the shell sub-channel. Idempotent."""
        with self._channel_lock:
            shell, self._shell = self._shell, None
        if shell is not None:
            shell.close()
            logger.info("Shell closed")

    # -------------------------------------------------------------------------
    # File transfer
    # -------------------------------------------------------------------------

    @property
    def is_sftp_active(self) -> bool:
        sftp = self._sftp
        return sftp is not None and sftp.is_open

    def start_sftp(self) -> OperationResult:
        """Open the file-transfer sub-session."""
        failure = self.ensure_usable()
        if failure:
            return failure

        with self._channel_lock:
            if self._sftp is None:
                self._sftp = FileTransferSession(self._transport, self._sftp_client_factory)
            result = self._sftp.start()
            if not result.ok:
                self._sftp = None
        return self._settle(result)

    def close_sftp(self) -> None:
        with self._channel_lock:
            sftp, self._sftp = self._sftp, None
        if sftp is not None:
            sftp.close()

    def _sftp_call(self, operation: Callable[[FileTransferSession], OperationResult]) -> OperationResult:
        sftp = self._sftp
        if sftp is None or not sftp.is_open:
            return OperationResult.failure(ErrorKind.SFTP_NOT_STARTED, SFTP_NOT_STARTED_MESSAGE)
        failure = self.ensure_usable()
        if failure:
            return failure
        return self._settle(operation(sftp))

    def list_remote_directory(self, path: str = ".") -> OperationResult:
        return self._sftp_call(lambda sftp: sftp.list(path))

    def upload_file(self, local_path, remote_path: str) -> OperationResult:
        return self._sftp_call(lambda sftp: sftp.upload(local_path, remote_path))

    def download_file(self, remote_path: str, local_path) -> OperationResult:
        return self._sftp_call(lambda sftp: sftp.download(remote_path, local_path))

    def create_remote_directory(self, path: str) -> OperationResult:
        return self._sftp_call(lambda sftp: sftp.mkdir(path))

    def delete_remote_file(self, path: str) -> OperationResult:
        return self._sftp_call(lambda sftp: sftp.remove(path))
