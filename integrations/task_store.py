"""
Task Store abstractions and implementations.

The engine only needs to create task records; listing and updating
tasks belongs to the notes/tasks service that owns them.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from shared.models import TaskCreateRequest, TaskRef


class TaskStore(ABC):
    """Task record sink used by task nodes."""

    @abstractmethod
    async def create(self, request: TaskCreateRequest) -> TaskRef:
        """Persist a new task and return a reference to it."""


class InMemoryTaskStore(TaskStore):
    """Keeps created tasks in a list. Used by tests and the CLI."""

    def __init__(self) -> None:
        self.tasks: list[dict[str, Any]] = []

    async def create(self, request: TaskCreateRequest) -> TaskRef:
        task_id = f"task-{uuid.uuid4().hex[:12]}"
        self.tasks.append({"task_id": task_id, **request.model_dump(mode="json")})
        return TaskRef(
            task_id=task_id,
            title=request.title,
            assigned_to=request.assigned_to,
            assigned_by=request.assigned_by,
        )


class SQLiteTaskStore(TaskStore):
    """SQLite-backed task store."""

    def __init__(self, db_path: str = "tasks.db"):
        self.db_path = db_path
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                assigned_to TEXT NOT NULL,
                assigned_by TEXT NOT NULL,
                task_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to
            ON tasks(assigned_to)
            """
        )
        self._conn.commit()

    async def create(self, request: TaskCreateRequest) -> TaskRef:
        title = request.title.strip()
        if not title:
            raise ValueError("Task title cannot be empty.")

        task_id = f"task-{uuid.uuid4().hex[:12]}"
        self._conn.execute(
            """
            INSERT INTO tasks(task_id, title, assigned_to, assigned_by, task_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                task_id,
                title,
                request.assigned_to,
                request.assigned_by,
                json.dumps(request.model_dump(mode="json"), ensure_ascii=False, sort_keys=True),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        self._conn.commit()
        return TaskRef(
            task_id=task_id,
            title=title,
            assigned_to=request.assigned_to,
            assigned_by=request.assigned_by,
        )

    def get(self, task_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT task_id, task_json FROM tasks WHERE task_id = ?",
            (task_id,),
        ).fetchone()
        if not row:
            return None
        return {"task_id": row["task_id"], **json.loads(row["task_json"])}

    def close(self) -> None:
        self._conn.close()
