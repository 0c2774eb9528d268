"""Storage interface for task records."""

from __future__ import annotations

from typing import Protocol

from taskpilot.tasks.models import Task


class StorageError(RuntimeError):
    """Raised when a task record cannot be read or written."""


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def save_task(self, task: Task) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(self, *, include_hidden: bool = False) -> list[Task]: ...
