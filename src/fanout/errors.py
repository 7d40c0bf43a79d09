"""Exceptions raised while executing a round.

Per-host errors are raised inside a session and converted into a failed
``ExecutionResult`` at the session boundary; only ``ConfigurationError``
escapes ``Coordinator.execute``.
"""

from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Optional

if TYPE_CHECKING:
    from fanout.models import ExecutionResult


class ErrorKind(Enum):
    """Category of a per-host failure."""

    CONFIGURATION = "configuration"
    CONNECT = "connect"
    AUTH = "auth"
    SESSION = "session"
    EXECUTION = "execution"
    TIMEOUT = "timeout"


class ExecutorError(Exception):
    """Base class for all fanout errors.

    Subclasses set ``prefix``, which is prepended to the cause to form the
    diagnostic message.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.EXECUTION
    prefix: ClassVar[str] = ""

    def __init__(self, cause: object = "", prefix: Optional[str] = None):
        self.cause = cause
        if prefix is not None:
            self.prefix = prefix
        super().__init__(self._format())

    def _format(self) -> str:
        if not self.prefix:
            return str(self.cause)
        return f"{self.prefix}: {self.cause}"


class ConfigurationError(ExecutorError, ValueError):
    """Invalid round configuration, such as an empty host list."""

    kind = ErrorKind.CONFIGURATION


class ConnectError(ExecutorError):
    """Host unreachable, connection refused, handshake or host key failure."""

    kind = ErrorKind.CONNECT
    prefix = "dial"


class AuthError(ExecutorError):
    """Credential rejected, missing, unreadable or malformed."""

    kind = ErrorKind.AUTH
    prefix = "auth"


class SessionError(ExecutorError):
    """Command channel could not be opened on an authenticated connection."""

    kind = ErrorKind.SESSION
    prefix = "new session"


class CommandError(ExecutorError):
    """Remote command exited non-zero or the transport broke mid-run."""

    kind = ErrorKind.EXECUTION
    prefix = "run"

    def __init__(
        self,
        cause: object,
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(cause)

    def _format(self) -> str:
        message = f"{self.prefix}: {self.cause}"
        if self.stderr:
            message += "\n" + self.stderr.rstrip("\n")
        return message


class HostTimeoutError(ExecutorError):
    """Host did not finish before its deadline, or the round was abandoned."""

    kind = ErrorKind.TIMEOUT
    prefix = "timeout"


class RoundError(ExecutorError):
    """At least one host in a round failed.

    ``results`` holds every host's result; callers needing host detail
    should inspect it rather than parse the message.
    """

    kind = ErrorKind.EXECUTION

    def __init__(self, results: list["ExecutionResult"]):
        self.results = list(results)
        self.failures = [r for r in self.results if not r.succeeded]
        super().__init__()

    def _format(self) -> str:
        causes = ", ".join(f"host {r.host} failed: {r.diagnostic}" for r in self.failures)
        return f"execution errors: [{causes}]"
