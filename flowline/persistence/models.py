"""Unit of work committed atomically by repositories."""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field

from ..models import ScheduledTimer, Task, TaskComment, WorkflowRun


class RunChangeSet(BaseModel):
    """All state changes produced by one engine step for a single run.

    Repositories persist a change set in one transaction: the run document,
    every touched task, new timers, cancelled timers and new comments.
    """

    run: WorkflowRun
    tasks: Dict[str, Task] = Field(default_factory=dict)
    timers: List[ScheduledTimer] = Field(default_factory=list)
    cancelled_timer_ids: List[str] = Field(default_factory=list)
    comments: List[TaskComment] = Field(default_factory=list)

    def add_task(self, task: Task) -> Task:
        self.tasks[task.task_id] = task
        return task

    def schedule(self, timer: ScheduledTimer) -> ScheduledTimer:
        self.timers.append(timer)
        return timer

    def cancel_timer(self, timer_id: str) -> None:
        self.timers = [t for t in self.timers if t.timer_id != timer_id]
        if timer_id not in self.cancelled_timer_ids:
            self.cancelled_timer_ids.append(timer_id)
