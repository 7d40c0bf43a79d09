"""Base remote session interface."""

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from fanout.errors import HostTimeoutError


@dataclass
class CommandResult:
    """Result of a remote command execution."""

    exit_code: int
    stdout: str
    stderr: str
    duration: Optional[float] = None


class Deadline:
    """Wall clock budget for one host, with an optional cancel signal.

    ``cancel`` is shared with the coordinator so an abandoned round can stop
    sessions that are still running.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.timeout = timeout
        self.cancel = cancel
        self._expires = time.monotonic() + timeout if timeout is not None else None

    def remaining(self, cap: Optional[float] = None) -> Optional[float]:
        """Seconds left, bounded by ``cap``; None means unbounded."""
        if self._expires is None:
            return cap
        left = max(self._expires - time.monotonic(), 0.0)
        return left if cap is None else min(left, cap)

    def expired(self) -> bool:
        """Check whether the budget is spent or the round was cancelled."""
        if self.cancel is not None and self.cancel.is_set():
            return True
        return self._expires is not None and time.monotonic() >= self._expires

    def check(self, stage: str) -> None:
        """Raise HostTimeoutError if the deadline has passed.

        Args:
            stage: Step being entered, used in the diagnostic.

        Raises:
            HostTimeoutError: If expired or cancelled.
        """
        if self.cancel is not None and self.cancel.is_set():
            raise HostTimeoutError(f"round abandoned before {stage}")
        if self._expires is not None and time.monotonic() >= self._expires:
            raise HostTimeoutError(f"exceeded {self.timeout:g}s before {stage}")


class RemoteSession(ABC):
    """Abstract base class for a single-command remote session.

    A session is used once: connect, open a channel, run one command, close.
    Sessions are context managers; leaving the block releases the channel and
    the connection whatever happened inside.
    """

    host: str

    @abstractmethod
    def connect(self) -> None:
        """Open and authenticate the connection.

        Raises:
            ConnectError: If the host cannot be reached.
            AuthError: If no credential is accepted.
        """
        pass

    @abstractmethod
    def open_channel(self) -> None:
        """Open the command channel on the authenticated connection.

        Raises:
            SessionError: If the channel cannot be opened.
        """
        pass

    @abstractmethod
    def run(self, command: str) -> CommandResult:
        """Execute a command and capture its output.

        Args:
            command: Literal command string, run in a non-interactive shell.

        Returns:
            CommandResult with exit code and output.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the channel and the connection."""
        pass

    def __enter__(self) -> "RemoteSession":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
