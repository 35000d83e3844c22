"""Record store interface plus in-memory and file-backed implementations.

Stores hold no business logic: every status or runtime decision is made by
TaskStateMachine, which hands stores complete field updates.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors.exceptions import TaskNotFoundError
from ..utils.atomic_io import atomic_write_model
from .task import Task, TaskStatus

logger = logging.getLogger(__name__)


def apply_updates(task: Task, updates: Dict[str, Any]) -> Task:
    """Return a re-validated copy of ``task`` with ``updates`` applied."""
    data = task.model_dump()
    data.update(updates)
    return Task.model_validate(data)


class TaskStore(ABC):
    """Persistence consumed by the state machine and the runner."""

    @abstractmethod
    async def load_task(self, project_id: str, task_id: str) -> Optional[Task]:
        """Return the task, or None if unknown."""

    @abstractmethod
    async def save_task(self, task: Task) -> None:
        """Insert or replace a task."""

    @abstractmethod
    async def list_tasks(self, project_id: str) -> List[Task]:
        """All tasks of a project ordered by queue position."""

    @abstractmethod
    async def append_iteration_log(
        self, project_id: str, task_id: str, iteration: int, content: str
    ) -> None:
        """Append raw output to an iteration's log."""

    @abstractmethod
    async def read_iteration_log(
        self, project_id: str, task_id: str, iteration: int
    ) -> Optional[str]:
        """Full log text of an iteration, or None if nothing was recorded."""

    async def update_task(
        self, project_id: str, task_id: str, updates: Dict[str, Any]
    ) -> Task:
        """Apply a partial update and persist it.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = await self.load_task(project_id, task_id)
        if task is None:
            raise TaskNotFoundError(project_id, task_id)
        updated = apply_updates(task, updates)
        await self.save_task(updated)
        return updated

    async def next_queued(self, project_id: str) -> Optional[Task]:
        """Queued task with the lowest queue position."""
        for task in await self.list_tasks(project_id):
            if task.status == TaskStatus.QUEUED:
                return task
        return None


class InMemoryTaskStore(TaskStore):
    """Dictionary-backed store for tests and single-process use."""

    def __init__(self):
        self._tasks: Dict[Tuple[str, str], Task] = {}
        self._logs: Dict[Tuple[str, str, int], List[str]] = {}
        self._legacy_logs: Dict[Tuple[str, str], str] = {}

    async def load_task(self, project_id: str, task_id: str) -> Optional[Task]:
        return self._tasks.get((project_id, task_id))

    async def save_task(self, task: Task) -> None:
        self._tasks[(task.project_id, task.id)] = task

    async def list_tasks(self, project_id: str) -> List[Task]:
        tasks = [t for (pid, _), t in self._tasks.items() if pid == project_id]
        return sorted(tasks, key=lambda t: t.queue_position)

    async def append_iteration_log(
        self, project_id: str, task_id: str, iteration: int, content: str
    ) -> None:
        self._logs.setdefault((project_id, task_id, iteration), []).append(content)

    async def read_iteration_log(
        self, project_id: str, task_id: str, iteration: int
    ) -> Optional[str]:
        chunks = self._logs.get((project_id, task_id, iteration))
        if chunks is None:
            if iteration == 1:
                return self._legacy_logs.get((project_id, task_id))
            return None
        return "".join(chunks)

    def set_legacy_log(self, project_id: str, task_id: str, content: str) -> None:
        """Seed the pre-iteration single-file log."""
        self._legacy_logs[(project_id, task_id)] = content


class FileTaskStore(TaskStore):
    """JSON-file store.

    Layout::

        <root>/<project>/tasks/<task_id>.json
        <root>/<project>/tasks/<task_id>/runs/iteration-<n>.log
        <root>/<project>/tasks/<task_id>/execution.log   (legacy, iteration 1)
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _tasks_dir(self, project_id: str) -> Path:
        return self.root / project_id / "tasks"

    def _task_file(self, project_id: str, task_id: str) -> Path:
        return self._tasks_dir(project_id) / f"{task_id}.json"

    def iteration_log_path(self, project_id: str, task_id: str, iteration: int) -> Path:
        return self._tasks_dir(project_id) / task_id / "runs" / f"iteration-{iteration}.log"

    def legacy_log_path(self, project_id: str, task_id: str) -> Path:
        return self._tasks_dir(project_id) / task_id / "execution.log"

    async def load_task(self, project_id: str, task_id: str) -> Optional[Task]:
        task_file = self._task_file(project_id, task_id)
        if not task_file.exists():
            return None
        return Task.model_validate_json(task_file.read_text())

    async def save_task(self, task: Task) -> None:
        tasks_dir = self._tasks_dir(task.project_id)
        tasks_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_model(self._task_file(task.project_id, task.id), task)

    async def list_tasks(self, project_id: str) -> List[Task]:
        tasks_dir = self._tasks_dir(project_id)
        if not tasks_dir.exists():
            return []
        tasks = []
        for task_file in sorted(tasks_dir.glob("*.json")):
            try:
                tasks.append(Task.model_validate_json(task_file.read_text()))
            except ValueError as e:
                logger.warning(f"Skipping malformed task file {task_file}: {e}")
        return sorted(tasks, key=lambda t: t.queue_position)

    async def append_iteration_log(
        self, project_id: str, task_id: str, iteration: int, content: str
    ) -> None:
        path = self.iteration_log_path(project_id, task_id, iteration)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(content)

    async def read_iteration_log(
        self, project_id: str, task_id: str, iteration: int
    ) -> Optional[str]:
        path = self.iteration_log_path(project_id, task_id, iteration)
        if path.exists():
            return path.read_text(encoding="utf-8")
        if iteration == 1:
            legacy = self.legacy_log_path(project_id, task_id)
            if legacy.exists():
                return legacy.read_text(encoding="utf-8")
        return None
