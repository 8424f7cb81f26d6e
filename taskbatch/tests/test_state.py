"""Tests for batch state persistence."""

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from taskbatch.config import BatchConfig
from taskbatch.errors import PersistenceError
from taskbatch.models import BatchState, TaskState
from taskbatch.state import StateStore, derive_batch_status, generate_batch_id


def _state(store: StateStore, *task_ids: str) -> BatchState:
    return store.create_initial("batch-1", "Batch One", "/tasks.yaml", task_ids)


class TestStateStore:
    """Tests for save/load round trips."""

    def test_save_creates_state_file(self, store: StateStore) -> None:
        """Saving creates <batch_id>.state.json in the state directory."""
        state = _state(store, "A")

        path = store.save(state)

        assert path == store.state_dir / "batch-1.state.json"
        assert path.exists()
        data = json.loads(path.read_text())
        assert data["batch_id"] == "batch-1"
        assert data["tasks"]["A"]["status"] == "pending"

    def test_round_trip_preserves_fields(self, store: StateStore) -> None:
        state = _state(store, "A", "B")
        state = store.mutate_task(
            state,
            "A",
            status="completed",
            session_id="sess-a",
            cost=1.5,
            result="done",
            completed_at=datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )
        state = store.mutate_task(state, "B", status="failed", error="boom", cost=0.5)

        store.save(state)
        loaded = store.load_batch("batch-1")

        assert loaded.batch_name == "Batch One"
        assert loaded.source_path == "/tasks.yaml"
        assert loaded.started_at == state.started_at
        assert loaded.total_cost == 2.0
        assert loaded.tasks["A"] == state.tasks["A"]
        assert loaded.tasks["B"].error == "boom"

    def test_load_applies_resume_rule(self, store: StateStore) -> None:
        """A task saved while running comes back pending with its session."""
        state = _state(store, "T", "U")
        state = store.mutate_task(
            state,
            "T",
            status="running",
            session_id="sess-123",
            progress="halfway",
            current_tool="Edit",
        )
        state = store.mutate_task(state, "U", status="completed")
        store.save(state)

        loaded = store.load_batch("batch-1")

        assert loaded.tasks["T"].status == "pending"
        assert loaded.tasks["T"].session_id == "sess-123"
        assert loaded.tasks["T"].progress is None
        assert loaded.tasks["T"].current_tool is None
        assert loaded.tasks["U"].status == "completed"

    def test_load_raw_keeps_running(self, store: StateStore) -> None:
        state = store.mutate_task(_state(store, "T"), "T", status="running")
        store.save(state)

        loaded = store.load_batch("batch-1", apply_resume_rule=False)

        assert loaded.tasks["T"].status == "running"

    def test_missing_file_raises(self, store: StateStore) -> None:
        with pytest.raises(PersistenceError, match="not found"):
            store.load_batch("nope")

    def test_malformed_file_raises(self, store: StateStore) -> None:
        store.state_dir.mkdir(parents=True)
        store.state_path("bad").write_text("{not json")

        with pytest.raises(PersistenceError, match="Invalid state file"):
            store.load_batch("bad")

    def test_missing_required_field_raises(self, store: StateStore) -> None:
        store.state_dir.mkdir(parents=True)
        store.state_path("bad").write_text(json.dumps({"batch_id": "bad"}))

        with pytest.raises(PersistenceError):
            store.load_batch("bad")

    def test_exists(self, store: StateStore) -> None:
        assert store.exists("batch-1") is False
        store.save(_state(store, "A"))
        assert store.exists("batch-1") is True

    def test_from_config(self, tmp_path: Path) -> None:
        config = BatchConfig(state_dir=tmp_path / "s", logs_dir=tmp_path / "l")

        store = StateStore.from_config(config)

        assert store.state_dir == tmp_path / "s"
        assert store.logs_dir == tmp_path / "l"


class TestAtomicSave:
    """A failed save never corrupts the previous snapshot."""

    def test_failed_replace_keeps_previous_file(self, store: StateStore) -> None:
        state = _state(store, "A")
        store.save(state)
        before = store.state_path("batch-1").read_text()

        updated = store.mutate_task(state, "A", status="running")
        with patch("taskbatch.state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError, match="disk full"):
                store.save(updated)

        assert store.state_path("batch-1").read_text() == before
        assert list(store.state_dir.glob("*.tmp")) == []

    def test_unwritable_directory_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file")
        store = StateStore(blocker / "state")

        with pytest.raises(PersistenceError):
            store.save(_state(store, "A"))

    def test_saved_file_is_world_readable(self, store: StateStore) -> None:
        path = store.save(_state(store, "A"))

        assert path.stat().st_mode & 0o777 == 0o644


class TestMutations:
    """Tests for the copy-on-write task updates."""

    def test_mutate_returns_new_state(self, store: StateStore) -> None:
        state = _state(store, "A")

        updated = store.mutate_task(state, "A", status="running")

        assert state.tasks["A"].status == "pending"
        assert updated.tasks["A"].status == "running"

    def test_total_cost_is_sum_of_task_costs(self, store: StateStore) -> None:
        state = _state(store, "A", "B", "C")
        state = store.mutate_task(state, "A", cost=0.5)
        state = store.mutate_task(state, "B", cost=1.25)
        state = store.mutate_task(state, "A", cost=0.75)

        assert state.total_cost == pytest.approx(2.0)
        assert state.total_cost == pytest.approx(
            sum(ts.cost for ts in state.tasks.values())
        )

    def test_unknown_task_raises(self, store: StateStore) -> None:
        with pytest.raises(KeyError):
            store.mutate_task(_state(store, "A"), "Z", status="running")

    def test_add_tasks_only_adds_missing(self, store: StateStore) -> None:
        state = store.mutate_task(_state(store, "A"), "A", status="completed")

        updated = store.add_tasks(state, ["A", "B"])

        assert updated.tasks["A"].status == "completed"
        assert updated.tasks["B"] == TaskState()

    def test_derive_stats(self, store: StateStore) -> None:
        state = _state(store, "A", "B", "C", "D")
        state = store.mutate_task(state, "A", status="completed", cost=1.0)
        state = store.mutate_task(state, "B", status="running")
        state = store.mutate_task(state, "C", status="failed", cost=0.5)

        stats = store.derive_stats(state)

        assert stats.total == 4
        assert stats.completed == 1
        assert stats.running == 1
        assert stats.failed == 1
        assert stats.pending == 1
        assert stats.cancelled == 0
        assert stats.total_cost == pytest.approx(1.5)


class TestDeriveBatchStatus:
    """Tests for the final batch status rule."""

    @pytest.mark.parametrize(
        "statuses,cancel,deadlocked,expected",
        [
            (["completed", "completed"], False, False, "completed"),
            (["completed", "failed"], False, False, "failed"),
            (["completed", "cancelled"], False, False, "cancelled"),
            (["failed", "cancelled"], False, False, "failed"),
            (["completed", "pending"], False, True, "failed"),
            (["completed", "failed"], True, False, "cancelled"),
        ],
    )
    def test_status(
        self, store: StateStore, statuses, cancel, deadlocked, expected
    ) -> None:
        state = _state(store, *[f"t{i}" for i in range(len(statuses))])
        for i, status in enumerate(statuses):
            state = store.mutate_task(state, f"t{i}", status=status)

        assert derive_batch_status(state, cancel, deadlocked) == expected


class TestBatchId:
    def test_format(self) -> None:
        batch_id = generate_batch_id("My Big Refactor!")

        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}-my-big-refactor-[a-z0-9]{4}", batch_id)

    def test_slug_is_truncated(self) -> None:
        batch_id = generate_batch_id("x" * 100)

        assert batch_id.split("-")[3] == "x" * 30

    def test_empty_name_falls_back(self) -> None:
        assert "-batch-" in generate_batch_id("!!!")


class TestListStates:
    def test_newest_first_and_skips_corrupt(self, store: StateStore) -> None:
        older = _state(store, "A")
        older.batch_id = "older"
        older.started_at = datetime(2025, 1, 1, tzinfo=timezone.utc)
        newer = _state(store, "A")
        newer.batch_id = "newer"
        newer.started_at = datetime(2025, 6, 1, tzinfo=timezone.utc)
        newer = store.mutate_task(newer, "A", status="running")
        store.save(older)
        store.save(newer)
        store.state_path("broken").write_text("garbage")

        states = store.list_states()

        assert [s.batch_id for s in states] == ["newer", "older"]
        # listing shows the file as written
        assert states[0].tasks["A"].status == "running"

    def test_no_state_dir(self, tmp_path: Path) -> None:
        assert StateStore(tmp_path / "missing").list_states() == []


class TestTaskArtifacts:
    def test_append_log_writes_timestamped_lines(self, store: StateStore) -> None:
        store.append_log("batch-1", "A", "Task started")
        store.append_log("batch-1", "A", "Tool: Read")

        lines = store.task_log_path("batch-1", "A").read_text().splitlines()

        assert len(lines) == 2
        assert lines[0].startswith("[")
        assert lines[0].endswith("] Task started")
        assert lines[1].endswith("] Tool: Read")

    def test_append_log_failure_is_not_raised(self, tmp_path: Path) -> None:
        blocker = tmp_path / "logs"
        blocker.write_text("file")
        store = StateStore(tmp_path / "state", blocker)

        store.append_log("batch-1", "A", "hello")  # no exception

    def test_save_task_result(self, store: StateStore) -> None:
        store.save_task_result(
            "batch-1", "A", TaskState(status="completed", cost=0.3, result="ok")
        )

        path = store.logs_dir / "batch-1" / "A.result.json"
        data = json.loads(path.read_text())
        assert data["status"] == "completed"
        assert data["result"] == "ok"
