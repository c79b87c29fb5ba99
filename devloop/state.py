"""Persistent state ledger.

Holds the workflow status record (state.json) and the task list (tasks.json)
under the state directory. Writes go to a temp file that is flushed, re-read
and then renamed over the target, so a reader sees either the previous
complete file or the new one. Reads retry briefly to ride out a concurrent
writer, and a file that stays unreadable is moved aside instead of crashing
the loop.
"""

import json
import logging
import os
import time
from dataclasses import fields
from pathlib import Path
from typing import Any, Callable

from devloop.errors import DevloopError
from devloop.models import Task, WorkflowState

logger = logging.getLogger(__name__)

READ_ATTEMPTS = 3
READ_BACKOFF_SECONDS = 0.05


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via temp file and atomic rename.

    Args:
        path: Destination file
        data: JSON-serializable value

    Raises:
        DevloopError: If the temp file does not read back as valid JSON
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.parent / f".{path.name}.{os.getpid()}.{time.time_ns()}.tmp"
    try:
        _write_temp(tmp, json.dumps(data, indent=2))
        try:
            json.loads(tmp.read_text())
        except json.JSONDecodeError as e:
            raise DevloopError(
                f"Refusing to replace {path.name}: temp write is corrupt ({e})"
            ) from e
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


def _write_temp(tmp: Path, text: str) -> None:
    with open(tmp, "w") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())


def read_json(
    path: Path,
    default: Callable[[], Any],
    attempts: int = READ_ATTEMPTS,
    backoff: float = READ_BACKOFF_SECONDS,
) -> Any:
    """Read JSON with a short retry on parse errors.

    Args:
        path: File to read
        default: Factory for the value returned when the file is missing or
            stays unparseable
        attempts: Parse attempts before giving up
        backoff: Base delay, multiplied by the attempt number

    Returns:
        Decoded JSON, or default() when missing or corrupt
    """
    for attempt in range(1, attempts + 1):
        if not path.exists():
            return default()
        try:
            return json.loads(path.read_text())
        except FileNotFoundError:
            # Removed between exists() and the read
            return default()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            if attempt < attempts:
                logger.debug(f"{path.name} unreadable (attempt {attempt}/{attempts}): {e}")
                time.sleep(backoff * attempt)
                continue
            corrupt = path.with_name(path.name + ".corrupt")
            logger.warning(f"{path.name} is corrupt, moving it to {corrupt.name}")
            os.replace(path, corrupt)
    return default()


class StateLedger:
    """Durable store for the workflow status record and the task list.

    Last writer wins; there is no merging across processes.

    Attributes:
        state_dir: Directory holding the ledger files
    """

    STATE_FILE = "state.json"
    TASKS_FILE = "tasks.json"

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir

    @property
    def state_path(self) -> Path:
        return self.state_dir / self.STATE_FILE

    @property
    def tasks_path(self) -> Path:
        return self.state_dir / self.TASKS_FILE

    def load_state(self) -> WorkflowState:
        data = read_json(self.state_path, dict)
        if not isinstance(data, dict):
            return WorkflowState()
        try:
            return WorkflowState.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed {self.STATE_FILE}: {e!r}")
            return WorkflowState()

    def save_state(self, state: WorkflowState) -> None:
        atomic_write_json(self.state_path, state.to_dict())

    def update_state(self, **changes: Any) -> WorkflowState:
        """Merge changes into the stored record and recompute progress.

        Args:
            **changes: WorkflowState field values

        Returns:
            The record as written

        Raises:
            ValueError: If a field name is unknown
        """
        state = self.load_state()
        valid = {f.name for f in fields(WorkflowState)}
        for key, value in changes.items():
            if key not in valid:
                raise ValueError(f"Unknown workflow state field: {key}")
            setattr(state, key, value)
        if state.total_tasks > 0:
            state.progress = state.completed_tasks / state.total_tasks
        self.save_state(state)
        return state

    def get_tasks(self) -> list[Task]:
        """Load the task list, skipping entries that are not valid tasks."""
        data = read_json(self.tasks_path, list)
        if isinstance(data, dict):
            data = data.get("tasks", [])
        if not isinstance(data, list):
            return []
        tasks = []
        for index, item in enumerate(data):
            try:
                tasks.append(Task.from_dict(item))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(
                    f"Skipping malformed task entry {index} in {self.TASKS_FILE}: {e!r}"
                )
        return tasks

    def save_tasks(self, tasks: list[Task]) -> None:
        atomic_write_json(self.tasks_path, [t.to_dict() for t in tasks])

    def get_task(self, task_id: str) -> Task | None:
        return next((t for t in self.get_tasks() if t.id == task_id), None)

    def update_task(self, task_id: str, **changes: Any) -> Task | None:
        """Apply field changes to one task and persist the list.

        Returns:
            The updated task, or None if no task has that id
        """
        tasks = self.get_tasks()
        for task in tasks:
            if task.id == task_id:
                for key, value in changes.items():
                    setattr(task, key, value)
                self.save_tasks(tasks)
                return task
        return None

    def clear(self) -> None:
        """Remove the status record. The task list is kept."""
        if self.state_path.exists():
            self.state_path.unlink()
