"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..contracts import WorkflowDefinition
from ..errors import DefinitionError
from ..models import RunStatus, ScheduledTimer, Task, TaskComment, TaskStatus, WorkflowRun
from .models import RunChangeSet
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._tasks: Dict[str, Task] = {}
        self._comments: Dict[str, List[TaskComment]] = {}
        self._timers: Dict[str, ScheduledTimer] = {}

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        key = (definition.name, definition.version)
        if key in self._definitions:
            raise DefinitionError(f"Workflow definition {definition.ref} already exists")
        self._definitions[key] = definition

    async def get_definition(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is not None:
            return self._definitions.get((name, version))
        versions = [v for (n, v) in self._definitions if n == name]
        if not versions:
            return None
        return self._definitions[(name, max(versions))]

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return [self._definitions[key] for key in sorted(self._definitions)]

    # ------------------------------------------------------------------
    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
    ) -> list[WorkflowRun]:
        runs = [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if (status is None or run.status == status)
            and (definition_name is None or run.definition_name == definition_name)
        ]
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    async def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(
        self, run_id: Optional[str] = None, status: Optional[TaskStatus] = None
    ) -> list[Task]:
        tasks = [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if (run_id is None or task.run_id == run_id)
            and (status is None or task.status == status)
        ]
        return sorted(tasks, key=lambda t: t.created_at)

    # ------------------------------------------------------------------
    async def add_comment(self, comment: TaskComment) -> None:
        self._comments.setdefault(comment.task_id, []).append(comment.model_copy())

    async def list_comments(self, task_id: str) -> list[TaskComment]:
        return [c.model_copy() for c in self._comments.get(task_id, [])]

    async def list_timers(self, run_id: Optional[str] = None) -> list[ScheduledTimer]:
        timers = [
            t.model_copy() for t in self._timers.values() if run_id is None or t.run_id == run_id
        ]
        return sorted(timers, key=lambda t: t.due_at)

    async def list_due_timers(self, now: datetime) -> list[ScheduledTimer]:
        return [t for t in await self.list_timers() if t.due_at <= now]

    # ------------------------------------------------------------------
    async def commit(self, changes: RunChangeSet) -> None:
        self._runs[changes.run.run_id] = changes.run.model_copy(deep=True)
        for task in changes.tasks.values():
            self._tasks[task.task_id] = task.model_copy(deep=True)
        for timer_id in changes.cancelled_timer_ids:
            self._timers.pop(timer_id, None)
        for timer in changes.timers:
            self._timers[timer.timer_id] = timer.model_copy()
        for comment in changes.comments:
            self._comments.setdefault(comment.task_id, []).append(comment.model_copy())
