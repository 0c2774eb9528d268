"""Storage backends for task records."""

from taskpilot.storage.base import StorageError, TaskStorage
from taskpilot.storage.memory import InMemoryTaskStorage
from taskpilot.storage.postgres import PostgresTaskStorage

__all__ = [
    "InMemoryTaskStorage",
    "PostgresTaskStorage",
    "StorageError",
    "TaskStorage",
]
