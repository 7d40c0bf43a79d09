"""Reduce per-host results into a round summary."""

from typing import Iterable, NamedTuple, Optional

from fanout.errors import ErrorKind, RoundError
from fanout.models import ExecutionResult


class Summary(NamedTuple):
    """Succeeded/total counts for a round."""

    succeeded: int
    total: int
    overall_succeeded: bool

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def __str__(self) -> str:
        return f"{self.succeeded}/{self.total} hosts succeeded"


def summarize(results: Iterable[ExecutionResult]) -> Summary:
    """Count successes; the round succeeds only if every host did.

    Args:
        results: Per-host results of one round.

    Returns:
        Summary of the round.
    """
    results = list(results)
    succeeded = sum(1 for r in results if r.succeeded)
    return Summary(
        succeeded=succeeded,
        total=len(results),
        overall_succeeded=succeeded == len(results),
    )


def errors_by_kind(results: Iterable[ExecutionResult]) -> dict[ErrorKind, int]:
    """Count failed results per error kind."""
    counts: dict[ErrorKind, int] = {}
    for result in results:
        if result.succeeded:
            continue
        kind = result.error_kind or ErrorKind.EXECUTION
        counts[kind] = counts.get(kind, 0) + 1
    return counts


def round_error(results: Iterable[ExecutionResult]) -> Optional[RoundError]:
    """Build the summary error for a round, or None if every host succeeded."""
    results = list(results)
    if all(r.succeeded for r in results):
        return None
    return RoundError(results)
