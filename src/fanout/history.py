"""Round history recording.

Each finished round is appended to ``history.json`` (newest first) and its
full per-host results are written to ``rounds/<timestamp>.json``.
"""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from fanout.aggregator import summarize
from fanout.models import ExecutionResult, ExecutorConfig

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 1000
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"


class RunRecorder:
    """Records execution rounds and reads them back."""

    def __init__(self, logs_dir: Path):
        """Initialize the recorder.

        Args:
            logs_dir: Directory for storing round logs.
        """
        self.logs_dir = logs_dir
        self.rounds_dir = logs_dir / "rounds"
        self.rounds_dir.mkdir(parents=True, exist_ok=True)
        self.history_file = logs_dir / "history.json"

    def record(
        self,
        config: ExecutorConfig,
        command: str,
        results: list[ExecutionResult],
        duration: float,
    ) -> dict[str, Any]:
        """Record a finished round.

        Args:
            config: The round configuration.
            command: The command that was run.
            results: Per-host results.
            duration: Round wall clock time in seconds.

        Returns:
            The history entry that was written.
        """
        started_at = datetime.now() - timedelta(seconds=duration)
        summary = summarize(results)
        round_id = started_at.strftime(TIMESTAMP_FORMAT)

        entry = {
            "id": round_id,
            "timestamp": started_at.isoformat(),
            "command": command,
            "hosts": list(config.hosts),
            "username": config.username,
            "mode": config.concurrency_mode.value,
            "succeeded": summary.succeeded,
            "total": summary.total,
            "overall_succeeded": summary.overall_succeeded,
            "duration": duration,
        }

        log_file = self.rounds_dir / f"{round_id}.json"
        with open(log_file, "w") as f:
            json.dump(
                {**entry, "results": [r.to_dict() for r in results]},
                f,
                indent=2,
                default=str,
            )

        self._append_to_history(entry)
        logger.debug("Recorded round %s to %s", round_id, log_file)
        return entry

    def _append_to_history(self, entry: dict[str, Any]) -> None:
        history = self._read_history()
        history.insert(0, entry)

        # Keep only the most recent entries
        history = history[:MAX_HISTORY_ENTRIES]

        with open(self.history_file, "w") as f:
            json.dump(history, f, indent=2)

    def _read_history(self) -> list[dict[str, Any]]:
        if not self.history_file.exists():
            return []
        try:
            with open(self.history_file, "r") as f:
                history = json.load(f)
        except json.JSONDecodeError:
            history = None
        if not isinstance(history, list):
            logger.warning("Ignoring corrupt history file %s", self.history_file)
            return []
        return history

    def get_history(
        self,
        limit: int = 10,
        command: Optional[str] = None,
        failed_only: bool = False,
    ) -> list[dict[str, Any]]:
        """Get recorded rounds, newest first.

        Args:
            limit: Maximum entries to return.
            command: Only rounds whose command contains this text.
            failed_only: Only rounds where some host failed.

        Returns:
            List of history entries.
        """
        history = self._read_history()

        if command:
            history = [h for h in history if command in h.get("command", "")]
        if failed_only:
            history = [h for h in history if not h.get("overall_succeeded")]

        return history[:limit]

    def get_round(self, round_id: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Get the full log of one round, or the latest if no id is given."""
        if round_id:
            if not _is_round_id(round_id):
                return None
            log_file = self.rounds_dir / f"{round_id}.json"
            if not log_file.exists():
                return None
        else:
            log_files = sorted(self.rounds_dir.glob("*.json"), reverse=True)
            if not log_files:
                return None
            log_file = log_files[0]

        try:
            with open(log_file, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt round log %s", log_file)
            return None
        return data if isinstance(data, dict) else None

    def cleanup_old_logs(self, max_age_days: int = 30) -> int:
        """Delete round logs older than ``max_age_days``.

        Returns:
            Number of logs deleted.
        """
        cutoff = datetime.now() - timedelta(days=max_age_days)
        deleted = 0

        for log_file in self.rounds_dir.glob("*.json"):
            try:
                log_time = datetime.strptime(log_file.stem, TIMESTAMP_FORMAT)
            except ValueError:
                continue
            if log_time < cutoff:
                log_file.unlink()
                deleted += 1

        return deleted


def _is_round_id(value: str) -> bool:
    """Check that a round id is a plain timestamp, not a path."""
    try:
        datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return False
    return True
