"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import WorkflowDefinition
from ..models import RunStatus, ScheduledTimer, Task, TaskComment, TaskStatus, WorkflowRun
from .models import RunChangeSet


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Reads return detached copies; mutating them has no effect until they
    are committed through :meth:`commit`.
    """

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Persist a new definition version. Versions are immutable."""

    async def get_definition(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        """Return a specific version, or the latest when ``version`` is ``None``."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return every stored definition version."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
    ) -> list[WorkflowRun]:
        """Return runs, newest first."""

    async def get_task(self, task_id: str) -> Task | None:
        """Retrieve a task by id."""

    async def list_tasks(
        self, run_id: Optional[str] = None, status: Optional[TaskStatus] = None
    ) -> list[Task]:
        """Return tasks in creation order."""

    async def add_comment(self, comment: TaskComment) -> None:
        """Append a comment to a task's thread."""

    async def list_comments(self, task_id: str) -> list[TaskComment]:
        """Return a task's comments in creation order."""

    async def list_timers(self, run_id: Optional[str] = None) -> list[ScheduledTimer]:
        """Return pending timers ordered by due time."""

    async def list_due_timers(self, now: datetime) -> list[ScheduledTimer]:
        """Return pending timers due at or before ``now``."""

    async def commit(self, changes: RunChangeSet) -> None:
        """Persist a change set atomically."""
