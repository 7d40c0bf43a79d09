"""Tests for the SSH remote session."""

import threading
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from fanout.errors import (
    AuthError,
    ConnectError,
    ErrorKind,
    HostTimeoutError,
    SessionError,
)
from fanout.models import Credential, ExecutorConfig, HostKeyPolicy
from fanout.remote.base import CommandResult, Deadline
from fanout.remote.ssh import SSHSession, load_private_key, run_on_host


class FakeChannel:
    """Minimal stand-in for a paramiko session channel."""

    def __init__(self, stdout=b"", stderr=b"", exit_code=0, finishes=True):
        self._stdout = [stdout] if stdout else []
        self._stderr = [stderr] if stderr else []
        self.exit_code = exit_code
        self.finishes = finishes
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        return self._stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        return self._stderr.pop(0)

    def exit_status_ready(self):
        return self.finishes

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True


class FakeSession:
    """Session whose steps succeed or fail on demand."""

    instances = []

    def __init__(self, host, config, pkey=None, deadline=None, fail=None, result=None):
        self.host = host
        self.config = config
        self.pkey = pkey
        self.deadline = deadline
        self.fail = fail or {}
        self.result = result or CommandResult(exit_code=0, stdout="ok\n", stderr="")
        self.steps = []
        self.closed = False
        FakeSession.instances.append(self)

    def _step(self, name):
        self.steps.append(name)
        if name in self.fail:
            raise self.fail[name]

    def connect(self):
        self._step("connect")

    def open_channel(self):
        self._step("open_channel")

    def run(self, command):
        self._step("run")
        return self.result

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def session_factory(**behaviour):
    def factory(host, config, pkey=None, deadline=None):
        return FakeSession(host, config, pkey=pkey, deadline=deadline, **behaviour)

    return factory


@pytest.fixture(autouse=True)
def reset_sessions():
    """Forget sessions created by earlier tests."""
    FakeSession.instances.clear()
    yield


@pytest.fixture
def config():
    """Password-authenticated config for one host."""
    return ExecutorConfig(
        hosts=["h1"],
        username="deploy",
        credential=Credential(password="secret"),
    )


class TestRunOnHost:
    """Tests for run_on_host()."""

    def test_success(self, config):
        """Test a command that exits zero."""
        result = run_on_host("h1", config, "uptime", session_factory=session_factory())

        assert result.succeeded is True
        assert result.output == "ok\n"
        assert result.diagnostic == ""
        assert result.exit_code == 0
        session = FakeSession.instances[0]
        assert session.steps == ["connect", "open_channel", "run"]
        assert session.closed is True

    def test_non_zero_exit(self, config):
        """Test that a non-zero exit is a failure carrying stderr."""
        factory = session_factory(
            result=CommandResult(exit_code=1, stdout="partial\n", stderr="disk full\n")
        )
        result = run_on_host("h1", config, "df", session_factory=factory)

        assert result.succeeded is False
        assert result.error_kind == ErrorKind.EXECUTION
        assert result.diagnostic.startswith("run: exit status 1")
        assert "disk full" in result.diagnostic
        assert result.output == "partial\n"
        assert result.exit_code == 1
        assert result.stderr == "disk full\n"

    def test_missing_exit_status(self, config):
        """Test a remote process that ended without reporting a status."""
        factory = session_factory(result=CommandResult(exit_code=-1, stdout="", stderr=""))
        result = run_on_host("h1", config, "reboot", session_factory=factory)

        assert result.succeeded is False
        assert "without exit status" in result.diagnostic

    @pytest.mark.parametrize(
        "step, error, kind, prefix",
        [
            ("connect", ConnectError("Connection refused"), ErrorKind.CONNECT, "dial:"),
            ("connect", AuthError("Authentication failed."), ErrorKind.AUTH, "auth:"),
            ("open_channel", SessionError("channel refused"), ErrorKind.SESSION, "new session:"),
            ("run", HostTimeoutError("exceeded 5s"), ErrorKind.TIMEOUT, "timeout:"),
        ],
    )
    def test_step_failures(self, config, step, error, kind, prefix):
        """Test that each step's failure is reported with its prefix."""
        result = run_on_host("h1", config, "uptime", session_factory=session_factory(fail={step: error}))

        assert result.succeeded is False
        assert result.error_kind == kind
        assert result.diagnostic.startswith(prefix)
        assert FakeSession.instances[0].closed is True

    def test_unparsable_key_fails_before_connecting(self, tmp_path):
        """Test that a malformed key is reported without any session."""
        key_file = tmp_path / "id_bad"
        key_file.write_text("this is not a private key\n")
        config = ExecutorConfig(
            hosts=["h1"],
            username="root",
            credential=Credential(key_file=str(key_file), password="fallback"),
        )
        factory = MagicMock()

        result = run_on_host("h1", config, "uptime", session_factory=factory)

        assert result.succeeded is False
        assert result.error_kind == ErrorKind.AUTH
        assert result.diagnostic.startswith("parse key:")
        factory.assert_not_called()

    def test_unreadable_key(self, tmp_path):
        """Test that a missing key file is reported as a read failure."""
        config = ExecutorConfig(
            hosts=["h1"],
            username="root",
            credential=Credential(key_file=str(tmp_path / "missing")),
        )
        result = run_on_host("h1", config, "uptime", session_factory=MagicMock())

        assert result.diagnostic.startswith("read key:")

    def test_parsed_key_is_passed_to_session(self, tmp_path):
        """Test that a valid key reaches the session."""
        key = paramiko.ECDSAKey.generate()
        key_file = tmp_path / "id_ecdsa"
        key.write_private_key_file(str(key_file))
        config = ExecutorConfig(
            hosts=["h1"],
            username="root",
            credential=Credential(key_file=str(key_file)),
        )

        result = run_on_host("h1", config, "uptime", session_factory=session_factory())

        assert result.succeeded is True
        assert FakeSession.instances[0].pkey.get_base64() == key.get_base64()

    def test_cancel_event_reaches_deadline(self, config):
        """Test that the coordinator's cancel signal is wired into the session."""
        cancel = threading.Event()
        run_on_host("h1", config, "uptime", cancel=cancel, session_factory=session_factory())

        assert FakeSession.instances[0].deadline.cancel is cancel


class TestLoadPrivateKey:
    """Tests for load_private_key()."""

    def test_loads_ecdsa_key(self, tmp_path):
        """Test loading an unencrypted key."""
        key = paramiko.ECDSAKey.generate()
        path = tmp_path / "id_ecdsa"
        key.write_private_key_file(str(path))

        loaded = load_private_key(str(path))
        assert isinstance(loaded, paramiko.ECDSAKey)

    def test_encrypted_key_without_passphrase(self, tmp_path):
        """Test that an encrypted key needs its passphrase."""
        key = paramiko.ECDSAKey.generate()
        path = tmp_path / "id_ecdsa"
        key.write_private_key_file(str(path), password="s3cret")

        with pytest.raises(AuthError, match="^parse key: .*passphrase"):
            load_private_key(str(path))

    def test_encrypted_key_with_passphrase(self, tmp_path):
        """Test that the passphrase unlocks an encrypted key."""
        key = paramiko.ECDSAKey.generate()
        path = tmp_path / "id_ecdsa"
        key.write_private_key_file(str(path), password="s3cret")

        loaded = load_private_key(str(path), passphrase="s3cret")
        assert loaded.get_base64() == key.get_base64()

    def test_garbage_key(self, tmp_path):
        """Test that a non-key file is a parse failure."""
        path = tmp_path / "id_rsa"
        path.write_text("garbage")

        with pytest.raises(AuthError, match="^parse key:"):
            load_private_key(str(path))


class TestSSHSession:
    """Tests for SSHSession against a mocked paramiko client."""

    @pytest.fixture
    def ssh_client(self):
        """Patch paramiko.SSHClient and return the mock instance."""
        with patch("fanout.remote.ssh.paramiko.SSHClient") as client_class:
            yield client_class.return_value

    def test_connect_uses_supplied_credentials_only(self, config, ssh_client):
        """Test the arguments passed to paramiko."""
        session = SSHSession("h1:2222", config)
        session.connect()

        kwargs = ssh_client.connect.call_args.kwargs
        assert kwargs["hostname"] == "h1"
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "deploy"
        assert kwargs["password"] == "secret"
        assert kwargs["pkey"] is None
        assert kwargs["look_for_keys"] is False
        assert kwargs["allow_agent"] is False
        assert kwargs["timeout"] == config.connect_timeout

    def test_no_auth_method(self, ssh_client):
        """Test that a session without credentials fails at auth."""
        config = ExecutorConfig(hosts=["h1"], username="root")
        with pytest.raises(AuthError, match="no authentication methods"):
            SSHSession("h1", config).connect()
        ssh_client.connect.assert_not_called()

    def test_connection_refused(self, config, ssh_client):
        """Test that transport errors become dial errors."""
        ssh_client.connect.side_effect = ConnectionRefusedError("Connection refused")
        with pytest.raises(ConnectError, match="^dial: Connection refused"):
            SSHSession("h1", config).connect()

    def test_authentication_rejected(self, config, ssh_client):
        """Test that rejected credentials become auth errors."""
        ssh_client.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")
        with pytest.raises(AuthError, match="^auth: Authentication failed."):
            SSHSession("h1", config).connect()

    def test_strict_host_keys_by_default(self, config, ssh_client):
        """Test that unknown host keys are rejected by default."""
        SSHSession("h1", config).connect()

        ssh_client.load_system_host_keys.assert_called_once()
        policy = ssh_client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, paramiko.RejectPolicy)

    def test_accept_any_host_key(self, ssh_client):
        """Test the explicit opt-out from host key verification."""
        config = ExecutorConfig(
            hosts=["h1"],
            username="root",
            credential=Credential(password="pw"),
            host_key_policy=HostKeyPolicy.ACCEPT_ANY,
        )
        SSHSession("h1", config).connect()

        ssh_client.load_system_host_keys.assert_not_called()
        policy = ssh_client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, paramiko.AutoAddPolicy)

    def test_open_channel_failure(self, config, ssh_client):
        """Test that a refused channel becomes a session error."""
        transport = ssh_client.get_transport.return_value
        transport.is_active.return_value = True
        transport.open_session.side_effect = paramiko.ChannelException(1, "Administratively prohibited")

        session = SSHSession("h1", config)
        session.connect()
        with pytest.raises(SessionError, match="^new session:"):
            session.open_channel()

    def test_open_channel_is_bounded_without_command_timeout(self, config, ssh_client):
        """Test that opening a channel never waits longer than the connect timeout."""
        transport = ssh_client.get_transport.return_value
        transport.is_active.return_value = True

        session = SSHSession("h1", config)
        session.connect()
        session.open_channel()

        transport.open_session.assert_called_once_with(timeout=config.connect_timeout)

    def test_close_releases_channel_and_client(self, config, ssh_client):
        """Test that leaving the context closes everything."""
        channel = FakeChannel()
        transport = ssh_client.get_transport.return_value
        transport.is_active.return_value = True
        transport.open_session.return_value = channel

        with SSHSession("h1", config) as session:
            session.connect()
            session.open_channel()

        assert channel.closed is True
        ssh_client.close.assert_called_once()

    def test_close_after_failed_connect(self, config, ssh_client):
        """Test that a half-open connection is still closed."""
        ssh_client.connect.side_effect = OSError("Network is unreachable")

        with pytest.raises(ConnectError):
            with SSHSession("h1", config) as session:
                session.connect()

        ssh_client.close.assert_called_once()

    def test_run_captures_streams_separately(self, config):
        """Test that stdout and stderr are kept apart."""
        session = SSHSession("h1", config)
        session._channel = FakeChannel(stdout=b"out\n", stderr=b"warn\n", exit_code=3)

        result = session.run("make")

        assert session._channel.command == "make"
        assert result.stdout == "out\n"
        assert result.stderr == "warn\n"
        assert result.exit_code == 3

    def test_run_times_out(self, config):
        """Test that a command that never exits hits the deadline."""
        session = SSHSession("h1", config, deadline=Deadline(timeout=0.05))
        session._channel = FakeChannel(finishes=False)

        with pytest.raises(HostTimeoutError, match="^timeout:"):
            session.run("sleep 600")

    def test_run_stops_when_cancelled(self, config):
        """Test that an abandoned round stops a running command."""
        cancel = threading.Event()
        cancel.set()
        session = SSHSession("h1", config, deadline=Deadline(cancel=cancel))
        session._channel = FakeChannel(finishes=False)

        with pytest.raises(HostTimeoutError, match="abandoned"):
            session.run("sleep 600")
