"""Shared fakes for paramiko transports, channels and SFTP clients."""

import threading
from unittest.mock import MagicMock

import paramiko
import pytest

from seaterm.config import AppSettings
from seaterm.session.ssh import SSHSession


class FakeChannel:
    """
    Scripted paramiko.Channel.

    chunks are handed out by recv() in order. An exec channel reports its
    exit status once the chunks run out; a held-open channel (a shell) keeps
    running until remote_close().
    """

    def __init__(self, chunks=(), exit_status=0, hold_open=False):
        self._lock = threading.Lock()
        self._chunks = list(chunks)
        self._hold_open = hold_open
        self.exit_status = exit_status
        self.closed = False
        self.active = True
        self.sent = []
        self.commands = []
        self.pty = None
        self.resized = []
        self.shell_invoked = False
        self.combine_stderr = False

    # remote side

    def feed(self, data):
        with self._lock:
            self._chunks.append(data)

    def remote_close(self):
        with self._lock:
            self._hold_open = False

    # paramiko.Channel API

    def recv_ready(self):
        with self._lock:
            return bool(self._chunks)

    def recv(self, nbytes):
        with self._lock:
            return self._chunks.pop(0) if self._chunks else b""

    def exit_status_ready(self):
        with self._lock:
            return not self._chunks and not self._hold_open

    def recv_exit_status(self):
        return self.exit_status

    def set_combine_stderr(self, combine):
        self.combine_stderr = combine

    def exec_command(self, command):
        self.commands.append(command)

    def get_pty(self, term="vt100", width=80, height=24):
        self.pty = (term, width, height)

    def invoke_shell(self):
        self.shell_invoked = True

    def settimeout(self, timeout):
        pass

    def sendall(self, data):
        self.sent.append(data)

    def resize_pty(self, width=80, height=24):
        self.resized.append((width, height))

    def close(self):
        self.closed = True
        self.active = False


class LateChannel(FakeChannel):
    """Output and exit status arrive together, right after the first recv_ready() poll."""

    def __init__(self, data):
        super().__init__([])
        self._late = data
        self._arrived = False

    def recv_ready(self):
        if not self._arrived:
            self._arrived = True
            self.feed(self._late)
            return False
        return super().recv_ready()

    def exit_status_ready(self):
        return self._arrived


class FakeKey:
    def get_name(self):
        return "ssh-ed25519"

    def asbytes(self):
        return b"fake-host-key"

    def get_base64(self):
        return "ZmFrZS1ob3N0LWtleQ=="


class FakeTransport:
    """paramiko.Transport stand-in with configurable auth behavior."""

    def __init__(self, password="secret123", interactive=False, accept_key=True):
        self.password = password
        self.interactive = interactive
        self.accept_key = accept_key
        self.active = True
        self.authenticated = False
        self.closed = False
        self.auth_timeout = None
        self.auth_calls = []
        self.channels = []
        self.opened = []

    def is_active(self):
        return self.active

    def is_authenticated(self):
        return self.authenticated

    def auth_password(self, username, password, event=None, fallback=True):
        self.auth_calls.append(("password", username))
        if password == self.password and not self.interactive:
            self.authenticated = True
            return []
        raise paramiko.AuthenticationException("Authentication failed.")

    def auth_interactive(self, username, handler, submethods=""):
        self.auth_calls.append(("keyboard-interactive", username))
        if not self.interactive:
            raise paramiko.BadAuthenticationType("Bad authentication type", ["password"])
        answers = handler("", "", [("Password: ", False), ("Verification: ", False)])
        if all(answer == self.password for answer in answers):
            self.authenticated = True
            return []
        raise paramiko.AuthenticationException("Authentication failed.")

    def auth_publickey(self, username, key):
        self.auth_calls.append(("publickey", username))
        if not self.accept_key:
            raise paramiko.AuthenticationException("Authentication failed.")
        self.authenticated = True
        return []

    def open_session(self):
        if not self.active:
            raise paramiko.SSHException("SSH session not active")
        channel = self.channels.pop(0) if self.channels else FakeChannel()
        self.opened.append(channel)
        return channel

    def get_remote_server_key(self):
        return FakeKey()

    def close(self):
        self.closed = True
        self.active = False


class TransportFactory:
    """Records connect targets and hands out one transport (or raises)."""

    def __init__(self, transport=None, error=None):
        self.transport = transport
        self.error = error
        self.calls = []

    def __call__(self, host, port, timeout, keepalive_interval=0):
        self.calls.append((host, port))
        if self.error is not None:
            raise self.error
        # A new connection revives a transport closed by an earlier failure
        self.transport.active = True
        self.transport.closed = False
        return self.transport


@pytest.fixture
def settings(tmp_path):
    return AppSettings(local_root=str(tmp_path), exec_timeout=2.0, stream_timeout=2.0)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def transport_factory(transport):
    return TransportFactory(transport)


@pytest.fixture
def sftp_client():
    client = MagicMock(spec=paramiko.SFTPClient)
    client.listdir_attr.return_value = []
    return client


@pytest.fixture
def session(settings, transport_factory, sftp_client):
    session = SSHSession(
        settings,
        transport_factory=transport_factory,
        sftp_client_factory=lambda transport: sftp_client,
    )
    yield session
    session.disconnect()


@pytest.fixture
def connected_session(session):
    result = session.connect("10.0.0.5", 2222, "alice", "secret123")
    assert result.ok, result.message
    return session
