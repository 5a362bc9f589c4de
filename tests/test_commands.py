"""Tests for command parsing, handles and the dispatcher."""

import threading
import time
from pathlib import Path

import pytest

from seaterm.commands import (
    CommandDispatcher,
    CommandHandle,
    CommandContext,
    PendingConnection,
    PendingConnectionSlot,
    CLEAR_SCREEN,
    parse_ssh_target,
)
from seaterm.session import SessionState
from seaterm.session.models import NOT_CONNECTED_MESSAGE, DISCONNECTED_MESSAGE, SFTP_NOT_STARTED_MESSAGE

from conftest import FakeChannel


def run(handle, timeout=5.0):
    """Collect (text, is_error) pairs until the handle completes."""
    assert handle.wait(timeout), f"{handle} did not finish"
    handle.drain()
    assert handle.completed
    return [(event.text, event.is_error) for event in handle.output]


@pytest.fixture
def dispatcher(session):
    return CommandDispatcher(session, probe=lambda host, port, timeout: host == "up.example")


@pytest.fixture
def connected_dispatcher(connected_session):
    return CommandDispatcher(connected_session)


class TestParseSshTarget:

    def test_user_host_and_port(self):
        target = parse_ssh_target(["alice@10.0.0.5", "-p", "2222"])
        assert (target.host, target.port, target.username) == ("10.0.0.5", 2222, "alice")
        assert target.target == "alice@10.0.0.5:2222"

    def test_default_port(self):
        assert parse_ssh_target(["root@router"]).port == 22
        assert parse_ssh_target(["root@router"], default_port=2200).port == 2200

    def test_invalid_port_falls_back(self):
        assert parse_ssh_target(["root@router", "-p", "abc"]).port == 22
        assert parse_ssh_target(["root@router", "-p", "70000"]).port == 22
        assert parse_ssh_target(["root@router", "-p"]).port == 22

    @pytest.mark.parametrize("args", [[], ["router"], ["@router"], ["root@"], ["a@b@c"]])
    def test_invalid_targets(self, args):
        assert parse_ssh_target(args) is None


class TestPendingConnectionSlot:

    def test_stage_and_clear(self):
        slot = PendingConnectionSlot(ttl=300)
        slot.stage(PendingConnection("h", 22, "u"))
        assert slot.peek().host == "h"
        slot.clear()
        assert slot.peek() is None

    def test_newer_target_replaces_older(self):
        slot = PendingConnectionSlot()
        slot.stage(PendingConnection("old", 22, "u"))
        slot.stage(PendingConnection("new", 22, "u"))
        assert slot.peek().host == "new"

    def test_expired_target_is_dropped(self):
        slot = PendingConnectionSlot(ttl=10)
        pending = PendingConnection("h", 22, "u", created_at=100.0)
        slot.stage(pending)
        assert slot.peek(now=105.0) is pending
        assert slot.peek(now=111.0) is None
        assert slot.peek(now=105.0) is None

    def test_zero_ttl_never_expires(self):
        assert not PendingConnection("h", 22, "u", created_at=0.0).is_expired(0, now=1e9)


class TestCommandContext:

    def test_relative_paths_use_local_root(self, tmp_path):
        context = CommandContext(local_root=tmp_path)
        assert context.resolve_local("a.txt") == tmp_path / "a.txt"
        assert context.resolve_local("/etc/hosts") == Path("/etc/hosts")


class TestCommandHandle:

    def test_events_then_single_completion(self):
        seen, completions = [], []
        handle = CommandHandle("demo", lambda text, err: seen.append((text, err)), lambda: completions.append(1))

        handle.emit("one")
        handle.error("two")
        handle.finish()
        handle.finish()
        handle.emit("late")

        assert seen == []
        handle.drain()
        handle.drain()

        assert seen == [("one", False), ("two", True)]
        assert completions == [1]
        assert handle.completed
        assert handle.failed

    def test_callbacks_run_on_draining_thread(self):
        threads = []
        handle = CommandHandle("demo", lambda text, err: threads.append(threading.current_thread()))

        worker = threading.Thread(target=lambda: (handle.emit("x"), handle.finish()))
        worker.start()
        worker.join()
        handle.drain()

        assert threads == [threading.current_thread()]

    def test_events_iterator(self):
        handle = CommandHandle("demo")

        def produce():
            for text in ("a", "b", "c"):
                handle.emit(text)
                time.sleep(0.01)
            handle.finish()

        threading.Thread(target=produce).start()
        assert [event.text for event in handle.events(timeout=2.0)] == ["a", "b", "c"]
        assert handle.completed

    def test_callback_errors_are_contained(self):
        def broken(text, is_error):
            raise RuntimeError("boom")

        handle = CommandHandle("demo", broken)
        handle.emit("x")
        handle.finish()
        handle.drain()
        assert handle.completed


class TestSyncCommands:

    def test_parse(self):
        assert CommandDispatcher.parse("  SSH-Exec   ls  -la ") == ("ssh-exec", ["ls", "-la"])
        assert CommandDispatcher.parse("") == ("", [])

    def test_echo(self, dispatcher):
        assert dispatcher.execute("echo hello   world").output == "hello world"

    def test_empty_input(self, dispatcher):
        result = dispatcher.execute("   ")
        assert result.output == "" and not result.is_error

    def test_clear(self, dispatcher):
        assert dispatcher.execute("clear").output == CLEAR_SCREEN

    def test_help_lists_commands(self, dispatcher):
        output = dispatcher.execute("help").output
        for command in ("ssh-login", "ssh-exec", "sftp-get", "ssh-shell-end", "ping"):
            assert command in output

    def test_unknown_command(self, dispatcher):
        result = dispatcher.execute("frobnicate now")
        assert result.is_error
        assert result.output == "command not found: frobnicate. Type 'help' for available commands."

    def test_async_command_on_sync_path(self, dispatcher):
        result = dispatcher.execute("ssh-exec ls")
        assert not result.is_error
        assert "asynchronously" in result.output

    def test_pwd_uses_local_root(self, dispatcher, tmp_path):
        assert dispatcher.execute("pwd").output == str(tmp_path)

    def test_system_info(self, dispatcher):
        assert dispatcher.execute("whoami").output
        assert dispatcher.execute("hostname").output
        assert dispatcher.execute("uptime").output.startswith("up ")
        assert len(dispatcher.execute("date").output) >= 19

    def test_exit_disconnects(self, connected_dispatcher):
        assert connected_dispatcher.execute("exit").output == "SSH connection closed."
        assert connected_dispatcher.session.state == SessionState.DISCONNECTED
        assert connected_dispatcher.execute("exit").output == ""


class TestAsyncCommands:

    def test_unknown_names_fall_back(self, dispatcher):
        assert dispatcher.execute_async("echo hi") is None
        assert dispatcher.execute_async("") is None

    def test_ssh_stages_nothing_itself(self, dispatcher):
        events = run(dispatcher.execute_async("ssh alice@10.0.0.5 -p 2222"))
        assert events == [("Ready to connect to alice@10.0.0.5:2222\nEnter password with: ssh-login <password>", False)]
        assert dispatcher.session.state == SessionState.DISCONNECTED

    def test_ssh_invalid_syntax(self, dispatcher):
        handle = dispatcher.execute_async("ssh badtarget")
        assert handle.done
        assert run(handle) == [("ssh: invalid syntax. Usage: ssh user@host [-p port]", True)]

    def test_ssh_when_connected(self, connected_dispatcher):
        (text, is_error), = run(connected_dispatcher.execute_async("ssh bob@elsewhere"))
        assert text.startswith("Already connected to: alice@10.0.0.5:2222")
        assert not is_error

    def test_login_with_pending_target(self, dispatcher, transport_factory):
        context = CommandContext(pending=PendingConnection("10.0.0.5", 2222, "alice"))

        events = run(dispatcher.execute_async("ssh-login secret123", context=context))

        assert events == [
            ("Connecting to alice@10.0.0.5:2222...", False),
            ("Connected to alice@10.0.0.5:2222", False),
        ]
        assert transport_factory.calls == [("10.0.0.5", 2222)]
        assert dispatcher.session.is_connected

    def test_login_keeps_spaces_in_password(self, dispatcher, transport):
        transport.password = "correct  horse"
        context = CommandContext(pending=PendingConnection("h", 22, "u"))
        run(dispatcher.execute_async("ssh-login correct  horse", context=context))
        assert dispatcher.session.is_connected

    def test_login_failure_is_an_error(self, dispatcher):
        context = CommandContext(pending=PendingConnection("10.0.0.5", 22, "alice"))
        events = run(dispatcher.execute_async("ssh-login wrong", context=context))
        assert events[-1][1] is True
        assert "authentication failed" in events[-1][0]

    def test_login_without_pending(self, dispatcher, transport_factory):
        handle = dispatcher.execute_async("ssh-login secret123")
        assert handle.done
        assert run(handle) == [("ssh-login: no pending connection. Use 'ssh user@host' first.", True)]
        assert transport_factory.calls == []

    def test_login_with_expired_pending(self, dispatcher):
        stale = PendingConnection("h", 22, "u", created_at=time.monotonic() - 10_000)
        events = run(dispatcher.execute_async("ssh-login pw", context=CommandContext(pending=stale)))
        assert events[0][0].startswith("ssh-login: no pending connection")

    def test_login_missing_password(self, dispatcher):
        assert run(dispatcher.execute_async("ssh-login")) == [
            ("ssh-login: missing password\nUsage: ssh-login <password>", True)
        ]

    def test_key_login_reads_key_file(self, dispatcher, transport, tmp_path, monkeypatch):
        (tmp_path / "id_ed25519").write_text("KEY DATA")
        loaded = []
        monkeypatch.setattr(
            "seaterm.session.ssh.load_private_key",
            lambda data, passphrase=None: loaded.append((data, passphrase)) or object(),
        )
        context = CommandContext(pending=PendingConnection("h", 22, "u"))

        events = run(dispatcher.execute_async("ssh-key id_ed25519 hunter2", context=context))

        assert loaded == [("KEY DATA", "hunter2")]
        assert events[-1] == ("Connected to u@h:22", False)

    def test_key_login_missing_file(self, dispatcher):
        context = CommandContext(pending=PendingConnection("h", 22, "u"))
        events = run(dispatcher.execute_async("ssh-key nope", context=context))
        assert events[-1][1] is True
        assert "cannot read key file" in events[-1][0]

    def test_exec_while_disconnected(self, dispatcher, transport_factory, transport):
        handle = dispatcher.execute_async("ssh-exec ls -la")

        assert handle.done
        assert run(handle) == [(NOT_CONNECTED_MESSAGE, True)]
        assert transport_factory.calls == []
        assert transport.opened == []

    def test_exec(self, connected_dispatcher, transport):
        transport.channels.append(FakeChannel([b"total 0\n"]))
        events = run(connected_dispatcher.execute_async("ssh-exec ls   -la"))
        assert events == [("$ ls   -la", False), ("total 0", False)]
        assert transport.opened[-1].commands == ["ls   -la"]

    def test_exec_missing_command(self, connected_dispatcher):
        assert run(connected_dispatcher.execute_async("ssh-exec")) == [
            ("ssh-exec: missing command\nUsage: ssh-exec <command>", True)
        ]

    def test_run_streams_fragments(self, connected_dispatcher, transport):
        transport.channels.append(FakeChannel([b"step 1\n", b"step 2\n"], exit_status=1))
        handle = connected_dispatcher.execute_async("ssh-run make")
        run(handle)

        fragments = [event.text for event in handle.output if event.fragment]
        assert fragments == ["step 1\n", "step 2\n"]
        assert handle.output[-1].text == "[exit status 1]"

    def test_shell_start_and_end(self, connected_dispatcher, transport):
        transport.channels.append(FakeChannel([], hold_open=True))

        events = run(connected_dispatcher.execute_async("ssh-shell"))
        assert events[0] == ("Starting interactive shell...", False)
        assert events[1][0].startswith("Interactive shell started.")
        assert connected_dispatcher.session.is_shell_active

        assert run(connected_dispatcher.execute_async("ssh-shell-end")) == [("Interactive shell ended.", False)]
        assert not connected_dispatcher.session.is_shell_active

    def test_shell_failure(self, connected_dispatcher, transport):
        def refuse():
            raise EOFError("no channel")
        transport.open_session = refuse
        events = run(connected_dispatcher.execute_async("ssh-shell"))
        assert events[-1] == ("Failed to start interactive shell.", True)

    def test_info(self, dispatcher):
        assert run(dispatcher.execute_async("ssh-info")) == [("Not connected to any SSH server.", False)]

    def test_info_when_connected(self, connected_dispatcher):
        (text, _), = run(connected_dispatcher.execute_async("ssh-info"))
        assert text.splitlines()[:2] == ["Connection: alice@10.0.0.5:2222", "Shell Active: No"]

    def test_fingerprint(self, connected_dispatcher):
        (text, _), = run(connected_dispatcher.execute_async("ssh-fingerprint"))
        assert text.startswith("Server fingerprint: ssh-ed25519 SHA256:")

    def test_ping(self, dispatcher):
        assert run(dispatcher.execute_async("ping up.example")) == [
            ("PING up.example...", False),
            ("Host up.example is reachable on port 80", False),
        ]
        assert run(dispatcher.execute_async("ping down.example"))[-1] == ("Host down.example is not reachable", False)
        assert run(dispatcher.execute_async("ping")) == [("ping: usage: ping <host>", True)]

    def test_sftp_get_before_start(self, connected_dispatcher, tmp_path):
        events = run(connected_dispatcher.execute_async("sftp-get report.txt local.txt"))
        assert events == [(SFTP_NOT_STARTED_MESSAGE, True)]
        assert not (tmp_path / "local.txt").exists()

    def test_sftp_get_while_disconnected(self, dispatcher, transport_factory, tmp_path):
        events = run(dispatcher.execute_async("sftp-get report.txt local.txt"))
        assert events == [(SFTP_NOT_STARTED_MESSAGE, True)]
        assert not (tmp_path / "local.txt").exists()
        assert transport_factory.calls == []

    def test_sftp_usage_checked_before_subsystem(self, dispatcher):
        assert run(dispatcher.execute_async("sftp-put only-one"))[0][0].startswith("sftp-put: missing arguments")
        assert run(dispatcher.execute_async("sftp-rm"))[0][0].startswith("sftp-rm: missing path")

    def test_sftp_after_connection_drop(self, connected_dispatcher, transport):
        run(connected_dispatcher.execute_async("sftp-start"))
        transport.active = False
        assert run(connected_dispatcher.execute_async("sftp-ls")) == [(DISCONNECTED_MESSAGE, True)]

    def test_sftp_round(self, connected_dispatcher, sftp_client, tmp_path):
        assert run(connected_dispatcher.execute_async("sftp-start")) == [("SFTP session started", False)]
        assert run(connected_dispatcher.execute_async("sftp-ls")) == [("(empty directory)", False)]

        def fake_getfo(remote_path, handle):
            handle.write(b"data")
            return 4
        sftp_client.getfo.side_effect = fake_getfo

        events = run(connected_dispatcher.execute_async("sftp-get /srv/report.txt local.txt"))

        assert events[-1][1] is False
        assert (tmp_path / "local.txt").read_bytes() == b"data"

    def test_sftp_usage_errors(self, connected_dispatcher):
        run(connected_dispatcher.execute_async("sftp-start"))
        assert run(connected_dispatcher.execute_async("sftp-get only-one"))[0][0].startswith("sftp-get: missing arguments")
        assert run(connected_dispatcher.execute_async("sftp-put only-one"))[0][0].startswith("sftp-put: missing arguments")
        assert run(connected_dispatcher.execute_async("sftp-mkdir"))[0][0].startswith("sftp-mkdir: missing path")
        assert run(connected_dispatcher.execute_async("sftp-rm"))[0][0].startswith("sftp-rm: missing path")


class TestSingleFlight:

    def test_second_command_is_rejected_while_busy(self, session):
        release = threading.Event()

        def slow_probe(host, port, timeout):
            release.wait(5)
            return True

        dispatcher = CommandDispatcher(session, probe=slow_probe)
        first = dispatcher.execute_async("ping slow.example")
        assert dispatcher.busy
        assert dispatcher.active_command == "ping"

        second = dispatcher.execute_async("ssh-info")
        assert second.done
        assert run(second) == [("busy: 'ping' is still executing", True)]

        release.set()
        run(first)

        deadline = time.monotonic() + 2
        while dispatcher.busy and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not dispatcher.busy
        assert run(dispatcher.execute_async("ssh-info"))[0][1] is False

    def test_crashing_handler_still_completes(self, session, monkeypatch):
        dispatcher = CommandDispatcher(session)
        monkeypatch.setattr(session, "fingerprint", lambda: 1 / 0)

        events = run(dispatcher.execute_async("ssh-fingerprint"))

        assert events == [("ssh-fingerprint: internal error: division by zero", True)]
