"""In-memory storage backend for tests and single-process use."""

from __future__ import annotations

import threading

from taskpilot.tasks.models import Task


class InMemoryTaskStorage:
    """Keeps deep copies so callers never share state with the store."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def save_task(self, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task is not None else None

    def list_tasks(self, *, include_hidden: bool = False) -> list[Task]:
        with self._lock:
            tasks = [task.model_copy(deep=True) for task in self._tasks.values()]
        if not include_hidden:
            tasks = [task for task in tasks if not task.hidden]
        return sorted(tasks, key=lambda task: task.last_updated, reverse=True)
