"""Sub-workflow steps: start a child run and wait for it to finish."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from ..contracts import SubWorkflowStep
from ..errors import FlowlineError, StepExecutionError
from ..models import Task, TaskStatus, TaskType, new_id
from ..utils.paths import MISSING, lookup
from .base import Failed, StepExecutor, StepOutcome, StepRuntime, StepWork, Waiting

logger = logging.getLogger(__name__)


class SubWorkflowExecutor(StepExecutor):
    task_type = TaskType.SUB_WORKFLOW

    def task_input(self, step: SubWorkflowStep, scope: Mapping[str, Any]) -> Dict[str, Any]:
        if not step.input_mapping:
            return {**scope, **step.default_input}
        data: Dict[str, Any] = {}
        for child_key, path in step.input_mapping.items():
            value = lookup(scope, path)
            if value is not MISSING:
                data[child_key] = value
        data.update(step.default_input)
        return data

    def open_task(self, step, run, scope, branch, now) -> Task:
        task = super().open_task(step, run, scope, branch, now)
        task.sub_run_id = new_id()
        return task

    def reopen_task(self, task: Task) -> None:
        task.status = TaskStatus.IN_PROGRESS
        task.sub_run_id = new_id()

    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        step: SubWorkflowStep = work.step
        try:
            await runtime.start_child_run(
                step.sub_workflow_name,
                dict(work.task.input),
                version=step.sub_workflow_version,
                run_id=work.task.sub_run_id,
                parent_run_id=work.run.run_id,
                parent_task_id=work.task.task_id,
            )
        except FlowlineError as exc:
            logger.warning(f"Could not start sub-workflow {step.sub_workflow_name}: {exc}")
            return Failed(
                StepExecutionError(
                    f"Sub-workflow '{step.sub_workflow_name}' could not start: {exc}",
                    {"sub_workflow": step.sub_workflow_name},
                )
            )
        return Waiting()
