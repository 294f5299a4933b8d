"""Step executor interface and the outcomes executors report back."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import httpx

from ..collaborators import AgentRunner
from ..contracts import StepBase, WorkflowDefinition
from ..errors import StepExecutionError
from ..models import BranchCursor, Task, TaskStatus, TaskType, WorkflowRun


@dataclass
class StepWork:
    """Everything an executor may read while performing one step."""

    run: WorkflowRun
    definition: WorkflowDefinition
    step: StepBase
    scope: Dict[str, Any]
    branch: Optional[str] = None
    task: Optional[Task] = None


@dataclass
class StepRuntime:
    """Collaborators available to executors."""

    agent_runner: AgentRunner
    http_client_factory: Callable[[float], httpx.AsyncClient]
    start_child_run: Callable[..., Awaitable[Any]]
    secrets: Mapping[str, str] = field(default_factory=dict)
    default_http_timeout: float = 30.0


@dataclass
class Completed:
    output: Dict[str, Any]


@dataclass
class Failed:
    error: StepExecutionError


@dataclass
class Waiting:
    """The step is suspended until an external event resumes it."""


@dataclass
class Finished:
    status: str


@dataclass
class FannedOut:
    branches: List[BranchCursor]


StepOutcome = Union[Completed, Failed, Waiting, Finished, FannedOut]


def normalize_output(value: Any) -> Dict[str, Any]:
    """Step outputs are merged into the context, so non-dict results are wrapped."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return {"result": value}


class StepExecutor(metaclass=abc.ABCMeta):
    """Performs the work of one step type."""

    task_type: Optional[TaskType] = None
    # Steps that wait for a human never run ``execute``; the engine parks the run.
    suspends: bool = False

    def task_input(self, step: StepBase, scope: Mapping[str, Any]) -> Dict[str, Any]:
        return {**scope, **step.default_input}

    def open_task(
        self,
        step: StepBase,
        run: WorkflowRun,
        scope: Mapping[str, Any],
        branch: Optional[str],
        now: datetime,
    ) -> Optional[Task]:
        """Create the task tracking this step, if the step type has one."""
        if self.task_type is None:
            return None
        return Task(
            run_id=run.run_id,
            step_name=step.name,
            type=self.task_type,
            status=TaskStatus.IN_PROGRESS,
            branch=branch,
            input=self.task_input(step, scope),
            created_at=now,
            updated_at=now,
        )

    def reopen_task(self, task: Task) -> None:
        """Prepare an existing task for another attempt."""
        task.status = TaskStatus.IN_PROGRESS

    @abc.abstractmethod
    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        raise NotImplementedError
