from __future__ import annotations

from pathlib import Path

import pytest

from dcode_workflow.models import ContextEntry, GraphShape, RunCheckpoint, StepStatus, WorkflowViewState
from dcode_workflow.state_store import RunStateStore, SnapshotSink, read_json_text, sanitize_run_id


def _snapshot(run_id: str = "run-1", iteration: int = 1) -> WorkflowViewState:
    return WorkflowViewState(
        run_id=run_id,
        graph=GraphShape(group="Main", steps=["Main__A", "Main__B"]),
        statuses={"Main__A": StepStatus.COMPLETE, "Main__B": StepStatus.ACTIVE},
        current_step="Main__B",
        iteration=iteration,
    )


def test_snapshot_sink_persists_latest_snapshot(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path)
    sink = SnapshotSink(store)
    sink(_snapshot(iteration=1))
    sink(_snapshot(iteration=2))

    restored = store.read_snapshot("run-1")
    assert restored.iteration == 2
    assert restored.statuses["Main__B"] == StepStatus.ACTIVE
    assert store.list_runs() == ["run-1"]
    assert not list(store.run_dir("run-1").glob("*.tmp"))


def test_checkpoint_round_trip_and_clear(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path)
    checkpoint = RunCheckpoint(
        run_id="run-7",
        sandbox_path="/work/sandbox",
        current_step="Sub__Two",
        payload=[ContextEntry(id="a1", kind="ASSISTANT", content="hello")],
        call_stack=["Main__B"],
        completed_steps=["Main__A", "Sub__One"],
        iteration=2,
    )
    store.write_checkpoint(checkpoint)
    assert store.read_checkpoint("run-7") == checkpoint

    store.clear_checkpoint("run-7")
    with pytest.raises(FileNotFoundError):
        store.read_checkpoint("run-7")


def test_corrupt_files_raise_value_error(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path)
    path = store.snapshot_path("run-1")
    path.parent.mkdir(parents=True)
    path.write_text('{"run_id": 3}', encoding="utf-8")
    with pytest.raises(ValueError):
        store.read_snapshot("run-1")

    empty = tmp_path / "empty.json"
    empty.write_text("  \n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_json_text(empty, "thing")


def test_sanitize_run_id() -> None:
    assert sanitize_run_id("feature/login run") == "feature-login-run"
    assert sanitize_run_id("../../etc") == "etc"
    with pytest.raises(ValueError):
        sanitize_run_id("///")
