"""
Schedule state persistence.

Keeps the scheduler's state in a JSON file and appends one line per
finished recipe run to a JSONL log, so a restart can pick the schedule
back up and the run history survives.
"""

import json
import logging
from pathlib import Path
from typing import List, Protocol

from recipe_models import RunLogEntry, ScheduleState

logger = logging.getLogger(__name__)


class ScheduleStateStore(Protocol):
    """Abstract interface for schedule state storage."""

    def load(self) -> ScheduleState:
        """Load persisted state. Run flags are reset since nothing is running yet."""
        ...

    def save(self, state: ScheduleState) -> None:
        """Persist state."""
        ...

    def append_run(self, entry: RunLogEntry) -> None:
        """Append a finished run to the log."""
        ...

    def recent_runs(self, limit: int = 50) -> List[RunLogEntry]:
        """Most recent runs, newest last."""
        ...


class JSONScheduleStateStore:
    """
    JSON-based implementation of ScheduleStateStore.

    Uses a JSON file for the state and JSONL for the append-only run log.
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.state_file = self.state_dir / "schedule_state.json"
        self.run_log_file = self.state_dir / "run_log.jsonl"

    def load(self) -> ScheduleState:
        if not self.state_file.exists():
            return ScheduleState()
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                state = ScheduleState(**json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load schedule state: {e}")
            return ScheduleState()
        # A run cannot survive a restart
        state.is_running = False
        state.current_recording_name = None
        return state

    def save(self, state: ScheduleState) -> None:
        tmp = self.state_file.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.model_dump(mode="json"), f, indent=2)
        tmp.replace(self.state_file)

    def append_run(self, entry: RunLogEntry) -> None:
        with open(self.run_log_file, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def recent_runs(self, limit: int = 50) -> List[RunLogEntry]:
        if not self.run_log_file.exists():
            return []
        entries = []
        with open(self.run_log_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(RunLogEntry.model_validate_json(line))
                except ValueError as e:
                    logger.warning(f"Skipping bad run log line: {e}")
        return entries[-limit:] if limit > 0 else entries
