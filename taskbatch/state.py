"""State management for batch persistence.

StateStore owns the on-disk layout of a batch: one JSON state file per batch
written atomically, plus per-task log and result files. Task updates never
mutate a BatchState in place; mutate_task() returns a new one with the cost
total recomputed.
"""

import json
import logging
import os
import random
import re
import string
import tempfile
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskbatch.config import BatchConfig
from taskbatch.errors import PersistenceError
from taskbatch.models import BatchState, BatchStats, BatchStatus, TaskState

logger = logging.getLogger(__name__)

STATE_SUFFIX = ".state.json"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_batch_id(name: str) -> str:
    """Build a readable, mostly unique id: YYYY-MM-DD-<slug>-<rand4>."""
    date = utcnow().strftime("%Y-%m-%d")
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")[:30] or "batch"
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"{date}-{slug}-{suffix}"


def derive_batch_status(
    state: BatchState, cancel_requested: bool = False, deadlocked: bool = False
) -> BatchStatus:
    """Final batch status once nothing is running.

    Cancel-all wins; then any failure or a deadlock; then any cancelled task.
    """
    statuses = {ts.status for ts in state.tasks.values()}
    if cancel_requested:
        return "cancelled"
    if deadlocked or "failed" in statuses:
        return "failed"
    if "cancelled" in statuses:
        return "cancelled"
    return "completed"


class StateStore:
    """Persistence for batch state, task logs and task results.

    Attributes:
        state_dir: Directory holding <batch_id>.state.json files
        logs_dir: Directory holding <batch_id>/<task_id>.log files
    """

    def __init__(self, state_dir: Path, logs_dir: Path | None = None) -> None:
        self.state_dir = Path(state_dir)
        self.logs_dir = Path(logs_dir) if logs_dir is not None else Path("logs")

    @classmethod
    def from_config(cls, config: BatchConfig) -> "StateStore":
        return cls(config.state_dir, config.logs_dir)

    def state_path(self, batch_id: str) -> Path:
        return self.state_dir / f"{batch_id}{STATE_SUFFIX}"

    # --- state transitions -------------------------------------------------

    def create_initial(
        self,
        batch_id: str,
        batch_name: str,
        source_path: str,
        task_ids: Iterable[str],
    ) -> BatchState:
        return BatchState(
            batch_id=batch_id,
            batch_name=batch_name,
            source_path=source_path,
            started_at=utcnow(),
            tasks={tid: TaskState() for tid in task_ids},
        )

    def mutate_task(
        self, state: BatchState, task_id: str, **changes: Any
    ) -> BatchState:
        """Return a new BatchState with one task's fields replaced.

        Raises:
            KeyError: If task_id is not part of the batch
        """
        if task_id not in state.tasks:
            raise KeyError(f"Unknown task: {task_id}")
        tasks = dict(state.tasks)
        tasks[task_id] = replace(tasks[task_id], **changes)
        return replace(
            state,
            tasks=tasks,
            total_cost=sum(ts.cost for ts in tasks.values()),
        )

    def add_tasks(self, state: BatchState, task_ids: Iterable[str]) -> BatchState:
        """Create pending entries for ids the saved state does not know yet."""
        new_ids = [tid for tid in task_ids if tid not in state.tasks]
        if not new_ids:
            return state
        tasks = dict(state.tasks)
        for tid in new_ids:
            tasks[tid] = TaskState()
        return replace(state, tasks=tasks)

    def derive_stats(self, state: BatchState) -> BatchStats:
        stats = BatchStats(total=len(state.tasks), total_cost=state.total_cost)
        for ts in state.tasks.values():
            setattr(stats, ts.status, getattr(stats, ts.status) + 1)
        return stats

    def reset_interrupted(self, state: BatchState) -> BatchState:
        """Apply the resume rule: running tasks become pending.

        Session tokens are kept so the next run can continue the session.
        """
        tasks = {
            tid: replace(ts, status="pending", progress=None, current_tool=None)
            if ts.status == "running"
            else ts
            for tid, ts in state.tasks.items()
        }
        return replace(state, tasks=tasks)

    # --- persistence -------------------------------------------------------

    def save(self, state: BatchState) -> Path:
        """Write state atomically.

        The snapshot goes to a temp file in the state directory and is then
        renamed over the previous one, so a failed write leaves the old file
        intact.

        Returns:
            Path of the state file

        Raises:
            PersistenceError: If the directory or file cannot be written
        """
        path = self.state_path(state.batch_id)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.state_dir, prefix=f".{state.batch_id}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(state.to_dict(), f, indent=2)
                os.chmod(tmp_name, 0o644)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to save state to {path}: {e}") from e

        logger.debug("Saved state for batch %s to %s", state.batch_id, path)
        return path

    def load(self, path: Path, apply_resume_rule: bool = True) -> BatchState:
        """Load a saved batch.

        Args:
            path: State file to read
            apply_resume_rule: Turn running tasks back into pending (set
                False to inspect the file as written)

        Raises:
            PersistenceError: If the file is missing or malformed
        """
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f)
            state = BatchState.from_dict(data)
        except FileNotFoundError as e:
            raise PersistenceError(f"State file not found: {path}") from e
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Invalid state file {path}: {e}") from e

        return self.reset_interrupted(state) if apply_resume_rule else state

    def load_batch(self, batch_id: str, apply_resume_rule: bool = True) -> BatchState:
        return self.load(self.state_path(batch_id), apply_resume_rule)

    def exists(self, batch_id: str) -> bool:
        return self.state_path(batch_id).exists()

    def list_states(self) -> list[BatchState]:
        """All readable saved batches as written, newest first.

        Unreadable files are logged and skipped.
        """
        if not self.state_dir.exists():
            return []

        states = []
        for path in self.state_dir.glob(f"*{STATE_SUFFIX}"):
            try:
                states.append(self.load(path, apply_resume_rule=False))
            except PersistenceError as e:
                logger.warning("Skipping %s: %s", path, e)

        states.sort(key=lambda s: s.started_at, reverse=True)
        return states

    # --- task artifacts ----------------------------------------------------

    def task_log_path(self, batch_id: str, task_id: str) -> Path:
        return self.logs_dir / batch_id / f"{task_id}.log"

    def append_log(self, batch_id: str, task_id: str, message: str) -> None:
        """Append a timestamped line to the task's log.

        Log writes are best effort: failures are logged, never raised.
        """
        path = self.task_log_path(batch_id, task_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(f"[{utcnow().isoformat()}] {message}\n")
        except OSError as e:
            logger.warning("Could not write task log %s: %s", path, e)

    def save_task_result(
        self, batch_id: str, task_id: str, task_state: TaskState
    ) -> None:
        path = self.logs_dir / batch_id / f"{task_id}.result.json"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(task_state.to_dict(), f, indent=2)
        except OSError as e:
            logger.warning("Could not write task result %s: %s", path, e)
