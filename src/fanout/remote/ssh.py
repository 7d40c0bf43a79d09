"""SSH remote session for running one command on one host."""

import logging
import threading
import time
from io import StringIO
from pathlib import Path
from typing import Callable, Optional

import paramiko

from fanout.errors import (
    AuthError,
    CommandError,
    ConnectError,
    ExecutorError,
    SessionError,
)
from fanout.models import ExecutionResult, ExecutorConfig, HostKeyPolicy, split_host_port
from fanout.remote.base import CommandResult, Deadline, RemoteSession

logger = logging.getLogger(__name__)

_READ_SIZE = 32768
_POLL_INTERVAL = 0.01

# Tried in order when parsing a private key of unknown type
KEY_TYPES = (
    ("Ed25519", paramiko.Ed25519Key),
    ("ECDSA", paramiko.ECDSAKey),
    ("RSA", paramiko.RSAKey),
)


def load_private_key(key_file: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Read and parse a private key file.

    No network I/O happens here, so a bad key fails a host before any
    connection attempt.

    Args:
        key_file: Path to the private key (``~`` is expanded).
        passphrase: Passphrase for an encrypted key.

    Returns:
        The parsed key.

    Raises:
        AuthError: ``read key:`` if the file cannot be read, ``parse key:`` if
            it is not a supported private key.
    """
    path = Path(key_file).expanduser()
    try:
        key_data = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise AuthError(e, prefix="read key") from e

    last_error: Optional[Exception] = None
    for key_name, key_class in KEY_TYPES:
        try:
            return key_class.from_private_key(StringIO(key_data), password=passphrase)
        except paramiko.PasswordRequiredException as e:
            raise AuthError(
                "private key is encrypted and no passphrase was given", prefix="parse key"
            ) from e
        except (paramiko.SSHException, ValueError, TypeError, IndexError) as e:
            logger.debug("%s: not a %s key: %s", path, key_name, e)
            last_error = e

    raise AuthError(f"unsupported or malformed private key ({last_error})", prefix="parse key")


class SSHSession(RemoteSession):
    """Runs a single command on a host over SSH.

    Public key authentication is attempted before password authentication.
    Agent and ``~/.ssh`` key discovery are disabled so only the supplied
    credential is used.
    """

    def __init__(
        self,
        host: str,
        config: ExecutorConfig,
        pkey: Optional[paramiko.PKey] = None,
        deadline: Optional[Deadline] = None,
    ):
        """Initialize the SSH session.

        Args:
            host: Target as ``host``, ``host:port`` or ``[v6addr]:port``.
            config: Round configuration (username, credential, timeouts).
            pkey: Already parsed private key, if key auth is wanted.
            deadline: Budget for the whole session.
        """
        self.host = host
        self.hostname, self.port = split_host_port(host, config.port)
        self.config = config
        self.pkey = pkey
        self.deadline = deadline or Deadline()
        self._client: Optional[paramiko.SSHClient] = None
        self._channel: Optional[paramiko.Channel] = None

    def connect(self) -> None:
        """Open the transport and authenticate."""
        password = self.config.credential.password
        if self.pkey is None and not password:
            raise AuthError("no authentication methods available")

        self.deadline.check("connect")
        self._client = paramiko.SSHClient()
        self._apply_host_key_policy(self._client)

        timeout = self.deadline.remaining(self.config.connect_timeout)
        logger.debug("%s: connecting to %s:%d", self.host, self.hostname, self.port)
        try:
            self._client.connect(
                hostname=self.hostname,
                port=self.port,
                username=self.config.username,
                pkey=self.pkey,
                password=password or None,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as e:
            raise AuthError(e) from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ConnectError(_describe(e)) from e
        logger.debug("%s: authenticated as %s", self.host, self.config.username)

    def _apply_host_key_policy(self, client: paramiko.SSHClient) -> None:
        if self.config.host_key_policy == HostKeyPolicy.ACCEPT_ANY:
            # No known keys are loaded, so every presented key is accepted
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            return

        client.load_system_host_keys()
        if self.config.known_hosts_file:
            path = Path(self.config.known_hosts_file).expanduser()
            try:
                client.load_host_keys(str(path))
            except OSError as e:
                raise ConnectError(f"cannot load known hosts file {path}: {e}") from e
        client.set_missing_host_key_policy(paramiko.RejectPolicy())

    def open_channel(self) -> None:
        """Open a session channel for the command."""
        self.deadline.check("new session")
        transport = self._client.get_transport() if self._client else None
        if transport is None or not transport.is_active():
            raise SessionError("connection is not active")
        try:
            self._channel = transport.open_session(
                timeout=self.deadline.remaining(self.config.connect_timeout)
            )
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise SessionError(_describe(e)) from e

    def run(self, command: str) -> CommandResult:
        """Execute the command and collect stdout and stderr until it exits.

        Both streams are drained as they arrive so a chatty stderr cannot
        stall the remote process.

        Raises:
            CommandError: If the transport fails mid-run.
            HostTimeoutError: If the deadline passes before the command exits.
        """
        if self._channel is None:
            raise SessionError("channel is not open")
        channel = self._channel
        start_time = time.monotonic()
        stdout: list[bytes] = []
        stderr: list[bytes] = []

        logger.debug("%s: running %r", self.host, command)
        try:
            channel.exec_command(command)
            while True:
                self.deadline.check("command exit")
                received = False
                if channel.recv_ready():
                    stdout.append(channel.recv(_READ_SIZE))
                    received = True
                if channel.recv_stderr_ready():
                    stderr.append(channel.recv_stderr(_READ_SIZE))
                    received = True
                if received:
                    continue
                if channel.exit_status_ready():
                    break
                time.sleep(_POLL_INTERVAL)

            # Data can land between the last poll and the exit status
            while channel.recv_ready():
                stdout.append(channel.recv(_READ_SIZE))
            while channel.recv_stderr_ready():
                stderr.append(channel.recv_stderr(_READ_SIZE))
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise CommandError(
                _describe(e),
                stdout=_decode(stdout),
                stderr=_decode(stderr),
            ) from e

        return CommandResult(
            exit_code=exit_code,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            duration=time.monotonic() - start_time,
        )

    def close(self) -> None:
        """Close the channel, then the connection."""
        for name in ("_channel", "_client"):
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                logger.warning("%s: error closing SSH %s: %s", self.host, name.strip("_"), e)
            setattr(self, name, None)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


SessionFactory = Callable[..., RemoteSession]


def run_on_host(
    host: str,
    config: ExecutorConfig,
    command: str,
    cancel: Optional[threading.Event] = None,
    session_factory: SessionFactory = SSHSession,
) -> ExecutionResult:
    """Run one command on one host and report the outcome.

    Every failure is captured in the returned result; nothing is retried and
    no shared state is touched, so any number of these may run at once.

    Args:
        host: Target host.
        config: Round configuration.
        command: Literal command string.
        cancel: Set by the coordinator when the round is abandoned.
        session_factory: Builds the session; ``SSHSession`` unless testing.

    Returns:
        The host's ExecutionResult.
    """
    started = time.monotonic()
    deadline = Deadline(config.command_timeout, cancel)

    try:
        pkey = None
        if config.credential.key_file:
            pkey = load_private_key(config.credential.key_file, config.credential.key_passphrase)

        with session_factory(host, config, pkey=pkey, deadline=deadline) as session:
            session.connect()
            session.open_channel()
            result = session.run(command)

    except CommandError as e:
        logger.debug("%s: %s", host, e)
        return ExecutionResult.failure(
            host,
            e.kind,
            str(e),
            output=e.stdout,
            exit_code=e.exit_code,
            stderr=e.stderr,
            duration=time.monotonic() - started,
        )
    except ExecutorError as e:
        logger.debug("%s: %s", host, e)
        return ExecutionResult.failure(
            host, e.kind, str(e), duration=time.monotonic() - started
        )

    duration = time.monotonic() - started
    if result.exit_code != 0:
        if result.exit_code < 0:
            cause = "remote command exited without exit status"
        else:
            cause = f"exit status {result.exit_code}"
        error = CommandError(cause, exit_code=result.exit_code, stderr=result.stderr)
        logger.debug("%s: %s", host, error)
        return ExecutionResult.failure(
            host,
            error.kind,
            str(error),
            output=result.stdout,
            exit_code=result.exit_code,
            stderr=result.stderr,
            duration=duration,
        )

    return ExecutionResult.success(
        host,
        output=result.stdout,
        exit_code=result.exit_code,
        stderr=result.stderr,
        duration=duration,
    )
