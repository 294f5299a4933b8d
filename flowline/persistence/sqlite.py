"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..contracts import WorkflowDefinition
from ..errors import DefinitionError
from ..models import RunStatus, ScheduledTimer, Task, TaskComment, TaskStatus, WorkflowRun
from .models import RunChangeSet
from .repository import WorkflowRepository


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Documents are stored as JSON next to the columns used for filtering.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS definitions (
                    name TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (name, version)
                );
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    definition_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    body TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    body TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS task_comments (
                    comment_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    body TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS timers (
                    timer_id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    due_at TEXT NOT NULL,
                    body TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_run ON tasks (run_id);
                CREATE INDEX IF NOT EXISTS idx_timers_due ON timers (due_at);
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._mutex, self._conn:
            self._conn.execute(query, params)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            return self._conn.execute(query, params).fetchall()

    def _write_changes(self, changes: RunChangeSet) -> None:
        run = changes.run
        with self._mutex, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO runs (run_id, definition_name, status, created_at, body) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    run.run_id,
                    run.definition_name,
                    run.status.value,
                    _timestamp(run.created_at),
                    run.model_dump_json(),
                ),
            )
            for task in changes.tasks.values():
                self._conn.execute(
                    "INSERT OR REPLACE INTO tasks (task_id, run_id, status, created_at, body) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        task.task_id,
                        task.run_id,
                        task.status.value,
                        _timestamp(task.created_at),
                        task.model_dump_json(),
                    ),
                )
            for timer_id in changes.cancelled_timer_ids:
                self._conn.execute("DELETE FROM timers WHERE timer_id = ?", (timer_id,))
            for timer in changes.timers:
                self._conn.execute(
                    "INSERT OR REPLACE INTO timers (timer_id, run_id, due_at, body) VALUES (?, ?, ?, ?)",
                    (timer.timer_id, timer.run_id, _timestamp(timer.due_at), timer.model_dump_json()),
                )
            for comment in changes.comments:
                self._conn.execute(
                    "INSERT INTO task_comments (comment_id, task_id, created_at, body) VALUES (?, ?, ?, ?)",
                    (
                        comment.comment_id,
                        comment.task_id,
                        _timestamp(comment.created_at),
                        comment.model_dump_json(),
                    ),
                )

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO definitions (name, version, body) VALUES (?, ?, ?)",
                definition.name,
                definition.version,
                definition.model_dump_json(),
            )
        except sqlite3.IntegrityError as exc:
            raise DefinitionError(f"Workflow definition {definition.ref} already exists") from exc

    async def get_definition(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definitions WHERE name = ? ORDER BY version DESC LIMIT 1",
                name,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definitions WHERE name = ? AND version = ?",
                name,
                version,
            )
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT body FROM definitions ORDER BY name, version"
        )
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM runs WHERE run_id = ?", run_id
        )
        return WorkflowRun.model_validate_json(row["body"]) if row else None

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
    ) -> list[WorkflowRun]:
        query = "SELECT body FROM runs WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(RunStatus(status).value)
        if definition_name is not None:
            query += " AND definition_name = ?"
            params.append(definition_name)
        query += " ORDER BY created_at DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowRun.model_validate_json(r["body"]) for r in rows]

    async def get_task(self, task_id: str) -> Task | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM tasks WHERE task_id = ?", task_id
        )
        return Task.model_validate_json(row["body"]) if row else None

    async def list_tasks(
        self, run_id: Optional[str] = None, status: Optional[TaskStatus] = None
    ) -> list[Task]:
        query = "SELECT body FROM tasks WHERE 1 = 1"
        params: list[Any] = []
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        if status is not None:
            query += " AND status = ?"
            params.append(TaskStatus(status).value)
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Task.model_validate_json(r["body"]) for r in rows]

    async def add_comment(self, comment: TaskComment) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO task_comments (comment_id, task_id, created_at, body) VALUES (?, ?, ?, ?)",
            comment.comment_id,
            comment.task_id,
            _timestamp(comment.created_at),
            comment.model_dump_json(),
        )

    async def list_comments(self, task_id: str) -> list[TaskComment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM task_comments WHERE task_id = ? ORDER BY created_at, rowid",
            task_id,
        )
        return [TaskComment.model_validate_json(r["body"]) for r in rows]

    async def list_timers(self, run_id: Optional[str] = None) -> list[ScheduledTimer]:
        if run_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT body FROM timers ORDER BY due_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM timers WHERE run_id = ? ORDER BY due_at",
                run_id,
            )
        return [ScheduledTimer.model_validate_json(r["body"]) for r in rows]

    async def list_due_timers(self, now: datetime) -> list[ScheduledTimer]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM timers WHERE due_at <= ? ORDER BY due_at",
            _timestamp(now),
        )
        return [ScheduledTimer.model_validate_json(r["body"]) for r in rows]

    async def commit(self, changes: RunChangeSet) -> None:
        await asyncio.to_thread(self._write_changes, changes)

    def close(self) -> None:
        self._conn.close()
