"""Fan one command out to every host in a round.

Path: fanout/coordinator.py

Hosts run either concurrently on a bounded thread pool or one after another
in list order. A failing host never stops the others; every host ends the
round with exactly one ExecutionResult.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from fanout.aggregator import errors_by_kind, round_error, summarize
from fanout.errors import ConfigurationError, ErrorKind, HostTimeoutError, RoundError
from fanout.models import ExecutionResult, ExecutorConfig
from fanout.remote.ssh import run_on_host

if TYPE_CHECKING:
    from fanout.history import RunRecorder

logger = logging.getLogger(__name__)

# runner(host, config, command, cancel=event) -> ExecutionResult
Runner = Callable[..., ExecutionResult]


def join_command(tokens: Iterable[str]) -> str:
    """Join positional command tokens with single spaces, keeping their order."""
    return " ".join(tokens)


class _Accumulator:
    """Results shared by the per-host tasks of one round.

    Slots are keyed by position in the host list so duplicate hosts each get
    their own result. Once closed, late results are dropped.
    """

    def __init__(self, total: int):
        self._lock = threading.Lock()
        self._total = total
        self._results: list[ExecutionResult] = []
        self._failures: list[ExecutionResult] = []
        self._filled: set[int] = set()
        self._closed = False

    def add(self, index: int, result: ExecutionResult) -> bool:
        """Store a host's result; returns False if the slot was not accepted."""
        with self._lock:
            if self._closed or index in self._filled:
                return False
            self._filled.add(index)
            self._results.append(result)
            if not result.succeeded:
                self._failures.append(result)
            return True

    def close(self) -> list[int]:
        """Stop accepting results and return the indices still missing."""
        with self._lock:
            self._closed = True
            return [i for i in range(self._total) if i not in self._filled]

    def force(self, index: int, result: ExecutionResult) -> None:
        """Fill a missing slot after close."""
        with self._lock:
            if index in self._filled:
                return
            self._filled.add(index)
            self._results.append(result)
            self._failures.append(result)

    @property
    def results(self) -> list[ExecutionResult]:
        with self._lock:
            return list(self._results)


class Coordinator:
    """Runs a command on every host of a round and collects the results.

    Usage:
        config = ExecutorConfig(
            hosts=["web1", "web2", "db1"],
            username="deploy",
            credential=Credential(key_file="~/.ssh/id_ed25519"),
        )
        results, error = Coordinator().execute(config, "uptime")
        if error:
            for result in error.failures:
                print(f"{result.host}: {result.diagnostic}")
    """

    def __init__(
        self,
        runner: Runner = run_on_host,
        recorder: Optional["RunRecorder"] = None,
    ):
        """Initialize the coordinator.

        Args:
            runner: Executes the command on one host; never raises for
                per-host failures.
            recorder: Optional sink that receives each finished round.
        """
        self.runner = runner
        self.recorder = recorder

    def execute(
        self, config: ExecutorConfig, command: str
    ) -> tuple[list[ExecutionResult], Optional[RoundError]]:
        """Execute a command on every host in the config.

        Args:
            config: Round configuration; not modified.
            command: Literal command string.

        Returns:
            Tuple of (one result per host, RoundError if any host failed).
            Results follow host order in sequential mode and completion order
            in parallel mode.

        Raises:
            ConfigurationError: If the host list is empty or the command is
                blank. No host is contacted.
        """
        if not config.hosts:
            raise ConfigurationError("no hosts specified")
        if not command or not command.strip():
            raise ConfigurationError("no command specified")

        started = time.monotonic()
        cancel = threading.Event()
        logger.info(
            "Starting round: %d host(s), %s, command %r",
            len(config.hosts),
            config.concurrency_mode.value,
            command,
        )

        if config.parallel:
            results = self._execute_parallel(config, command, cancel)
        else:
            results = self._execute_sequential(config, command, cancel)

        duration = time.monotonic() - started
        self._log_round(results, duration)

        if self.recorder is not None:
            try:
                self.recorder.record(config, command, results, duration)
            except Exception as e:
                # History is optional; the round itself already finished
                logger.warning("Could not record round: %s", e, exc_info=True)

        return results, round_error(results)

    def _execute_parallel(
        self, config: ExecutorConfig, command: str, cancel: threading.Event
    ) -> list[ExecutionResult]:
        accumulator = _Accumulator(len(config.hosts))
        workers = min(config.max_workers, len(config.hosts))
        logger.debug("Dispatching to %d worker(s)", workers)

        def task(index: int, host: str) -> None:
            result = self._run_one(host, config, command, cancel)
            if not accumulator.add(index, result):
                logger.debug("%s: result arrived after the round closed", host)

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout")
        timed_out = False
        try:
            futures = [
                pool.submit(task, index, host)
                for index, host in enumerate(config.hosts)
            ]
            _, pending = wait(futures, timeout=config.round_timeout)
            timed_out = bool(pending)
        finally:
            if timed_out:
                cancel.set()
            pool.shutdown(wait=not timed_out, cancel_futures=timed_out)

        for index in accumulator.close():
            accumulator.force(index, self._timeout_result(config, index))
        return accumulator.results

    def _execute_sequential(
        self, config: ExecutorConfig, command: str, cancel: threading.Event
    ) -> list[ExecutionResult]:
        results: list[ExecutionResult] = []
        timer = None
        if config.round_timeout is not None:
            timer = threading.Timer(config.round_timeout, cancel.set)
            timer.daemon = True
            timer.start()

        try:
            for index, host in enumerate(config.hosts):
                if cancel.is_set():
                    results.append(self._timeout_result(config, index))
                    continue
                results.append(self._run_one(host, config, command, cancel))
        finally:
            if timer is not None:
                timer.cancel()
        return results

    def _run_one(
        self,
        host: str,
        config: ExecutorConfig,
        command: str,
        cancel: threading.Event,
    ) -> ExecutionResult:
        try:
            return self.runner(host, config, command, cancel=cancel)
        except Exception as e:
            # A broken runner must still leave a result for its host
            logger.error("%s: unexpected executor error: %s", host, e, exc_info=True)
            return ExecutionResult.failure(host, ErrorKind.EXECUTION, f"executor error: {e}")

    @staticmethod
    def _timeout_result(config: ExecutorConfig, index: int) -> ExecutionResult:
        limit = f" within {config.round_timeout:g}s" if config.round_timeout else ""
        error = HostTimeoutError(f"round did not finish{limit}")
        return ExecutionResult.failure(config.hosts[index], error.kind, str(error))

    @staticmethod
    def _log_round(results: list[ExecutionResult], duration: float) -> None:
        for result in results:
            if not result.succeeded:
                logger.info("%s: FAILED - %s", result.host, result.diagnostic)

        summary = summarize(results)
        logger.info("Round finished: %s in %.2fs", summary, duration)

        breakdown = errors_by_kind(results)
        if breakdown:
            parts = ", ".join(
                f"{kind.value}={count}"
                for kind, count in sorted(breakdown.items(), key=lambda x: -x[1])
            )
            logger.info("Failures by kind: %s", parts)
