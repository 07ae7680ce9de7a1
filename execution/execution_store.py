"""Persistent template/execution/event store for the workflow engine."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone

from shared.workflow_contracts import WorkflowEvent, WorkflowExecution, WorkflowTemplate


class ExecutionStore:
    """SQLite-backed store for templates, execution snapshots and events."""

    def __init__(self, db_path: str = "workflow.db"):
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
            CREATE TABLE IF NOT EXISTS workflow_templates (
                template_id TEXT PRIMARY KEY,
                template_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                execution_id TEXT PRIMARY KEY,
                template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                triggered_by TEXT NOT NULL,
                execution_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_workflow_executions_status
            ON workflow_executions(status)
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_workflow_events_execution_id
            ON workflow_events(execution_id)
            """
        )
        self._conn.commit()

    # ─── Templates ──────────────────────────────────────────────

    def save_template(self, template: WorkflowTemplate) -> None:
        payload = template.model_dump(mode="json")
        self._conn.execute(
            """
            INSERT INTO workflow_templates (template_id, template_json, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(template_id) DO UPDATE SET
                template_json=excluded.template_json,
                updated_at=excluded.updated_at
            """,
            (
                template.id,
                json.dumps(payload, ensure_ascii=False),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        self._conn.commit()

    def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = self._conn.execute(
            "SELECT template_json FROM workflow_templates WHERE template_id = ?",
            (template_id,),
        ).fetchone()
        if row is None:
            return None
        return WorkflowTemplate(**json.loads(row["template_json"]))

    def list_templates(self) -> list[WorkflowTemplate]:
        rows = self._conn.execute(
            "SELECT template_json FROM workflow_templates ORDER BY updated_at DESC"
        ).fetchall()
        return [WorkflowTemplate(**json.loads(row["template_json"])) for row in rows]

    # ─── Executions ─────────────────────────────────────────────

    def save_execution(self, execution: WorkflowExecution) -> None:
        payload = execution.model_dump(mode="json")
        self._conn.execute(
            """
            INSERT INTO workflow_executions
                (execution_id, template_id, status, triggered_by, execution_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status=excluded.status,
                execution_json=excluded.execution_json,
                updated_at=excluded.updated_at
            """,
            (
                execution.id,
                execution.template_id,
                execution.status,
                execution.triggered_by,
                json.dumps(payload, ensure_ascii=False),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        self._conn.commit()

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = self._conn.execute(
            "SELECT execution_json FROM workflow_executions WHERE execution_id = ?",
            (execution_id,),
        ).fetchone()
        if row is None:
            return None
        return WorkflowExecution(**json.loads(row["execution_json"]))

    def list_executions(self, status: str | None = None) -> list[WorkflowExecution]:
        if status:
            rows = self._conn.execute(
                """
                SELECT execution_json
                FROM workflow_executions
                WHERE status = ?
                ORDER BY updated_at DESC
                """,
                (status,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT execution_json FROM workflow_executions ORDER BY updated_at DESC"
            ).fetchall()
        return [WorkflowExecution(**json.loads(row["execution_json"])) for row in rows]

    # ─── Events ─────────────────────────────────────────────────

    def save_event(self, event: WorkflowEvent) -> None:
        payload = event.model_dump(mode="json")
        self._conn.execute(
            """
            INSERT OR REPLACE INTO workflow_events (event_id, execution_id, event_type, event_json, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.event_id,
                event.execution_id,
                event.event_type,
                json.dumps(payload, ensure_ascii=False),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        self._conn.commit()

    def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        rows = self._conn.execute(
            """
            SELECT event_json
            FROM workflow_events
            WHERE execution_id = ?
            ORDER BY seq ASC
            """,
            (execution_id,),
        ).fetchall()
        return [WorkflowEvent(**json.loads(row["event_json"])) for row in rows]

    def close(self) -> None:
        self._conn.close()
