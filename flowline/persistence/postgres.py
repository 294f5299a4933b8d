"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import WorkflowDefinition
from ..errors import DefinitionError
from ..models import RunStatus, ScheduledTimer, Task, TaskComment, TaskStatus, WorkflowRun
from .models import RunChangeSet
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                name TEXT NOT NULL,
                version INTEGER NOT NULL,
                body JSONB NOT NULL,
                PRIMARY KEY (name, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                definition_name TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_comments (
                id SERIAL PRIMARY KEY,
                comment_id TEXT UNIQUE NOT NULL,
                task_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS timers (
                timer_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                due_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO definitions (name, version, body) VALUES ($1, $2, $3::jsonb)",
                definition.name,
                definition.version,
                definition.model_dump_json(),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DefinitionError(f"Workflow definition {definition.ref} already exists") from exc
        finally:
            await conn.close()

    async def get_definition(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await self._fetchrow(
                "SELECT body::text AS body FROM definitions WHERE name = $1 "
                "ORDER BY version DESC LIMIT 1",
                name,
            )
        else:
            row = await self._fetchrow(
                "SELECT body::text AS body FROM definitions WHERE name = $1 AND version = $2",
                name,
                version,
            )
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await self._fetch(
            "SELECT body::text AS body FROM definitions ORDER BY name, version"
        )
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchrow("SELECT body::text AS body FROM runs WHERE run_id = $1", run_id)
        return WorkflowRun.model_validate_json(row["body"]) if row else None

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
    ) -> list[WorkflowRun]:
        rows = await self._fetch(
            "SELECT body::text AS body FROM runs "
            "WHERE ($1::text IS NULL OR status = $1) "
            "AND ($2::text IS NULL OR definition_name = $2) "
            "ORDER BY created_at DESC",
            RunStatus(status).value if status is not None else None,
            definition_name,
        )
        return [WorkflowRun.model_validate_json(r["body"]) for r in rows]

    async def get_task(self, task_id: str) -> Task | None:
        row = await self._fetchrow("SELECT body::text AS body FROM tasks WHERE task_id = $1", task_id)
        return Task.model_validate_json(row["body"]) if row else None

    async def list_tasks(
        self, run_id: Optional[str] = None, status: Optional[TaskStatus] = None
    ) -> list[Task]:
        rows = await self._fetch(
            "SELECT body::text AS body FROM tasks "
            "WHERE ($1::text IS NULL OR run_id = $1) "
            "AND ($2::text IS NULL OR status = $2) "
            "ORDER BY created_at",
            run_id,
            TaskStatus(status).value if status is not None else None,
        )
        return [Task.model_validate_json(r["body"]) for r in rows]

    async def add_comment(self, comment: TaskComment) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO task_comments (comment_id, task_id, created_at, body) "
                "VALUES ($1, $2, $3, $4::jsonb)",
                comment.comment_id,
                comment.task_id,
                comment.created_at,
                comment.model_dump_json(),
            )
        finally:
            await conn.close()

    async def list_comments(self, task_id: str) -> list[TaskComment]:
        rows = await self._fetch(
            "SELECT body::text AS body FROM task_comments WHERE task_id = $1 ORDER BY created_at, id",
            task_id,
        )
        return [TaskComment.model_validate_json(r["body"]) for r in rows]

    async def list_timers(self, run_id: Optional[str] = None) -> list[ScheduledTimer]:
        rows = await self._fetch(
            "SELECT body::text AS body FROM timers WHERE ($1::text IS NULL OR run_id = $1) "
            "ORDER BY due_at",
            run_id,
        )
        return [ScheduledTimer.model_validate_json(r["body"]) for r in rows]

    async def list_due_timers(self, now: datetime) -> list[ScheduledTimer]:
        rows = await self._fetch(
            "SELECT body::text AS body FROM timers WHERE due_at <= $1 ORDER BY due_at", now
        )
        return [ScheduledTimer.model_validate_json(r["body"]) for r in rows]

    async def commit(self, changes: RunChangeSet) -> None:
        run = changes.run
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO runs (run_id, definition_name, status, created_at, body)
                    VALUES ($1, $2, $3, $4, $5::jsonb)
                    ON CONFLICT (run_id) DO UPDATE
                    SET status = EXCLUDED.status, body = EXCLUDED.body
                    """,
                    run.run_id,
                    run.definition_name,
                    run.status.value,
                    run.created_at,
                    run.model_dump_json(),
                )
                for task in changes.tasks.values():
                    await conn.execute(
                        """
                        INSERT INTO tasks (task_id, run_id, status, created_at, body)
                        VALUES ($1, $2, $3, $4, $5::jsonb)
                        ON CONFLICT (task_id) DO UPDATE
                        SET status = EXCLUDED.status, body = EXCLUDED.body
                        """,
                        task.task_id,
                        task.run_id,
                        task.status.value,
                        task.created_at,
                        task.model_dump_json(),
                    )
                if changes.cancelled_timer_ids:
                    await conn.execute(
                        "DELETE FROM timers WHERE timer_id = ANY($1::text[])",
                        list(changes.cancelled_timer_ids),
                    )
                for timer in changes.timers:
                    await conn.execute(
                        """
                        INSERT INTO timers (timer_id, run_id, due_at, body)
                        VALUES ($1, $2, $3, $4::jsonb)
                        ON CONFLICT (timer_id) DO UPDATE
                        SET due_at = EXCLUDED.due_at, body = EXCLUDED.body
                        """,
                        timer.timer_id,
                        timer.run_id,
                        timer.due_at,
                        timer.model_dump_json(),
                    )
                for comment in changes.comments:
                    await conn.execute(
                        "INSERT INTO task_comments (comment_id, task_id, created_at, body) "
                        "VALUES ($1, $2, $3, $4::jsonb)",
                        comment.comment_id,
                        comment.task_id,
                        comment.created_at,
                        comment.model_dump_json(),
                    )
        finally:
            await conn.close()
