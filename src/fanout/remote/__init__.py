"""Remote session backends."""

from fanout.remote.base import CommandResult, Deadline, RemoteSession
from fanout.remote.ssh import SSHSession, load_private_key, run_on_host

__all__ = [
    "CommandResult",
    "Deadline",
    "RemoteSession",
    "SSHSession",
    "load_private_key",
    "run_on_host",
]
