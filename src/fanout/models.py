"""fanout data models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from fanout.errors import ConfigurationError, ErrorKind


DEFAULT_PORT = 22
DEFAULT_MAX_WORKERS = 16
DEFAULT_CONNECT_TIMEOUT = 10.0


def split_host_port(host: str, default_port: int = DEFAULT_PORT) -> tuple[str, int]:
    """Split ``host``, ``host:port`` or ``[v6addr]:port`` into its parts.

    A bare IPv6 address (more than one colon, no brackets) is returned whole.

    Raises:
        ConfigurationError: If the port is not a valid number.
    """
    host = host.strip()
    if host.startswith("["):
        addr, _, rest = host[1:].partition("]")
        if rest.startswith(":"):
            return addr, _parse_port(rest[1:], host)
        return addr, default_port

    if host.count(":") == 1:
        name, port = host.split(":")
        return name, _parse_port(port, host)

    return host, default_port


def _parse_port(value: str, host: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigurationError(f"invalid port in host '{host}'")
    if not 0 < port < 65536:
        raise ConfigurationError(f"invalid port in host '{host}'")
    return port


class ConcurrencyMode(Enum):
    """How a round is dispatched across hosts."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class HostKeyPolicy(Enum):
    """How unknown remote host keys are treated."""

    STRICT = "strict"          # Reject hosts missing from known_hosts
    ACCEPT_ANY = "accept_any"  # Accept and remember any host key


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one command on one host."""

    host: str
    succeeded: bool
    output: str = ""
    diagnostic: str = ""
    error_kind: Optional[ErrorKind] = None
    exit_code: Optional[int] = None
    stderr: str = ""
    duration: Optional[float] = None

    def __post_init__(self) -> None:
        """Validate result consistency."""
        if not self.host:
            raise ValueError("Result host is required")
        if not self.succeeded and not self.diagnostic:
            raise ValueError(f"Failed result for '{self.host}' needs a diagnostic")

    @classmethod
    def success(
        cls,
        host: str,
        output: str = "",
        exit_code: Optional[int] = 0,
        stderr: str = "",
        duration: Optional[float] = None,
    ) -> "ExecutionResult":
        """Build a successful result."""
        return cls(
            host=host,
            succeeded=True,
            output=output,
            exit_code=exit_code,
            stderr=stderr,
            duration=duration,
        )

    @classmethod
    def failure(
        cls,
        host: str,
        kind: ErrorKind,
        diagnostic: str,
        output: str = "",
        exit_code: Optional[int] = None,
        stderr: str = "",
        duration: Optional[float] = None,
    ) -> "ExecutionResult":
        """Build a failed result.

        Args:
            host: Target host.
            kind: Failure category.
            diagnostic: Human readable failure detail.
            output: Any standard output captured before the failure.
            exit_code: Remote exit status, if the command ran.
            stderr: Captured standard error.
            duration: Seconds spent on the host.

        Returns:
            The failed ExecutionResult.
        """
        return cls(
            host=host,
            succeeded=False,
            output=output,
            diagnostic=diagnostic,
            error_kind=kind,
            exit_code=exit_code,
            stderr=stderr,
            duration=duration,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary."""
        return {
            "host": self.host,
            "succeeded": self.succeeded,
            "output": self.output,
            "diagnostic": self.diagnostic,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "exit_code": self.exit_code,
            "stderr": self.stderr,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionResult":
        """Create result from dictionary."""
        error_kind = data.get("error_kind")
        if isinstance(error_kind, str):
            error_kind = ErrorKind(error_kind)

        return cls(
            host=data["host"],
            succeeded=data["succeeded"],
            output=data.get("output") or "",
            diagnostic=data.get("diagnostic") or "",
            error_kind=error_kind,
            exit_code=data.get("exit_code"),
            stderr=data.get("stderr") or "",
            duration=data.get("duration"),
        )


@dataclass(frozen=True)
class Credential:
    """Authentication material for every host in a round.

    A key file and a password may both be given; the key is tried first.
    """

    key_file: Optional[str] = None
    key_passphrase: Optional[str] = None
    password: Optional[str] = None

    def has_auth_method(self) -> bool:
        """Check whether any authentication method is supplied."""
        return bool(self.key_file or self.password)

    def __repr__(self) -> str:
        return (
            f"Credential(key_file={self.key_file!r}, "
            f"password={'***' if self.password else None})"
        )


@dataclass(frozen=True)
class ExecutorConfig:
    """Configuration for a single execution round."""

    hosts: Sequence[str]
    username: str
    credential: Credential = field(default_factory=Credential)
    concurrency_mode: ConcurrencyMode = ConcurrencyMode.PARALLEL
    port: int = DEFAULT_PORT
    max_workers: int = DEFAULT_MAX_WORKERS
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    command_timeout: Optional[float] = None
    round_timeout: Optional[float] = None
    host_key_policy: HostKeyPolicy = HostKeyPolicy.STRICT
    known_hosts_file: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate and freeze the configuration.

        An empty host list is accepted here and rejected by the coordinator,
        so that it surfaces when a round is started.
        """
        if isinstance(self.hosts, str):
            raise ConfigurationError("hosts must be a list of host names, not a string")
        # Freeze the host list so it cannot grow mid-run
        object.__setattr__(self, "hosts", tuple(self.hosts))

        for host in self.hosts:
            if not host or not host.strip():
                raise ConfigurationError("host entries must be non-empty")
            split_host_port(host, self.port)
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"invalid port: {self.port}")
        if self.connect_timeout <= 0:
            raise ConfigurationError("connect_timeout must be positive")
        for name in ("command_timeout", "round_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive")

    @property
    def parallel(self) -> bool:
        """Whether hosts are contacted concurrently."""
        return self.concurrency_mode == ConcurrencyMode.PARALLEL

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutorConfig":
        """Create a config from a dictionary.

        Accepts the same keys as the configuration file plus ``hosts``.
        """
        mode = data.get("concurrency_mode")
        if mode is None:
            parallel = data.get("parallel", True)
            mode = ConcurrencyMode.PARALLEL if parallel else ConcurrencyMode.SEQUENTIAL
        elif isinstance(mode, str):
            mode = _parse_enum(ConcurrencyMode, mode, "concurrency_mode")

        policy = data.get("host_key_policy", HostKeyPolicy.STRICT)
        if isinstance(policy, str):
            policy = _parse_enum(HostKeyPolicy, policy, "host_key_policy")

        hosts = data.get("hosts") or []
        if isinstance(hosts, str):
            hosts = [h.strip() for h in hosts.split(",") if h.strip()]

        return cls(
            hosts=hosts,
            username=data.get("username") or "root",
            credential=Credential(
                key_file=data.get("key_file"),
                key_passphrase=data.get("key_passphrase"),
                password=data.get("password"),
            ),
            concurrency_mode=mode,
            port=data.get("port", DEFAULT_PORT),
            max_workers=data.get("max_workers", DEFAULT_MAX_WORKERS),
            connect_timeout=data.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT),
            command_timeout=data.get("command_timeout"),
            round_timeout=data.get("round_timeout"),
            host_key_policy=policy,
            known_hosts_file=data.get("known_hosts_file"),
        )


def _parse_enum(enum_cls: type[Enum], value: str, name: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"invalid {name} '{value}' (expected one of: {choices})")
