"""PostgreSQL-backed task storage: one JSONB document per task."""

from __future__ import annotations

import threading
from typing import Any

from pydantic import ValidationError

from taskpilot.storage.base import StorageError
from taskpilot.tasks.models import Task


class PostgresTaskStorage:
    """Persist task records in PostgreSQL with automatic table migration."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("TASKPILOT_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    status TEXT NOT NULL,
                    hidden BOOLEAN NOT NULL DEFAULT FALSE,
                    next_check TIMESTAMPTZ,
                    document JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status
                ON tasks(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_next_check
                ON tasks(next_check)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_updated_at
                ON tasks(updated_at DESC)
                """)
            conn.commit()

    def save_task(self, task: Task) -> Task:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    title,
                    status,
                    hidden,
                    next_check,
                    document,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (task_id) DO UPDATE
                SET title = EXCLUDED.title,
                    status = EXCLUDED.status,
                    hidden = EXCLUDED.hidden,
                    next_check = EXCLUDED.next_check,
                    document = EXCLUDED.document,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    task.id,
                    task.title,
                    task.status,
                    task.hidden,
                    task.next_check,
                    self._json_wrapper(task.model_dump(mode="json")),
                    task.created,
                    task.last_updated,
                ),
            )
            conn.commit()
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(self, *, include_hidden: bool = False) -> list[Task]:
        query = "SELECT document FROM tasks"
        if not include_hidden:
            query += " WHERE hidden = FALSE"
        query += " ORDER BY updated_at DESC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_task(row) for row in rows]

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _row_to_task(row: Any) -> Task:
        document = row["document"]
        try:
            if isinstance(document, str):
                return Task.model_validate_json(document)
            return Task.model_validate(document)
        except ValidationError as exc:
            raise StorageError(f"Stored task document is unreadable: {exc}") from exc
