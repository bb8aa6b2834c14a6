from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .models import RunCheckpoint, WorkflowViewState

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_RUN_ID_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path* for the duration of the context.

    The sidecar lets the data file itself be swapped with ``os.replace``
    without invalidating the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, fsync, then rename into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json_text(path: Path, label: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Args:
        path: Filesystem path to read.
        label: Human-readable label used in error messages.

    Returns:
        The raw file text.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def sanitize_run_id(run_id: str) -> str:
    """Make a run id safe to use as a single directory name."""
    cleaned = _RUN_ID_PATTERN.sub("-", run_id.strip()).strip(".-")
    if not cleaned:
        raise ValueError(f"run id {run_id!r} has no usable characters")
    return cleaned


# ---------------------------------------------------------------------------
# RunStateStore
# ---------------------------------------------------------------------------


class RunStateStore:
    """Filesystem store for published view snapshots and pause checkpoints.

    Layout::

        <root>/runs/<run_id>/snapshot.json
        <root>/runs/<run_id>/checkpoint.json

    Every write is atomic and guarded by an ``fcntl`` lock, so a dashboard
    process can poll snapshots while the engine is writing them.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.runs_dir = root / "runs"
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / sanitize_run_id(run_id)

    def snapshot_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "snapshot.json"

    def checkpoint_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "checkpoint.json"

    def list_runs(self) -> list[str]:
        return sorted(path.name for path in self.runs_dir.iterdir() if path.is_dir())

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def write_snapshot(self, snapshot: WorkflowViewState) -> Path:
        path = self.snapshot_path(snapshot.run_id)
        with _locked_file(path):
            _atomic_write_text(path, snapshot.model_dump_json(indent=2))
        logger.debug("Wrote snapshot for run %s (iteration %d)", snapshot.run_id, snapshot.iteration)
        return path

    def read_snapshot(self, run_id: str) -> WorkflowViewState:
        """Read the latest published snapshot of a run.

        Raises:
            FileNotFoundError: If the run never published a snapshot.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self.snapshot_path(run_id)
        with _locked_file(path):
            text = read_json_text(path, "run snapshot")
        try:
            return WorkflowViewState.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"run snapshot at {path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def write_checkpoint(self, checkpoint: RunCheckpoint) -> Path:
        path = self.checkpoint_path(checkpoint.run_id)
        with _locked_file(path):
            _atomic_write_text(path, checkpoint.model_dump_json(indent=2))
        logger.info("Saved checkpoint for run %s at %s", checkpoint.run_id, checkpoint.current_step)
        return path

    def read_checkpoint(self, run_id: str) -> RunCheckpoint:
        """Read a paused run's checkpoint.

        Raises:
            FileNotFoundError: If no checkpoint exists for ``run_id``.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self.checkpoint_path(run_id)
        with _locked_file(path):
            text = read_json_text(path, "run checkpoint")
        try:
            return RunCheckpoint.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"run checkpoint at {path} failed validation: {exc}") from exc

    def clear_checkpoint(self, run_id: str) -> None:
        path = self.checkpoint_path(run_id)
        with _locked_file(path):
            path.unlink(missing_ok=True)


class SnapshotSink:
    """``on_state_update`` callback that persists every snapshot to a store."""

    def __init__(self, store: RunStateStore) -> None:
        self.store = store

    def __call__(self, snapshot: WorkflowViewState) -> None:
        self.store.write_snapshot(snapshot)
