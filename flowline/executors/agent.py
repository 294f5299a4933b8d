"""Agent execution steps."""

from __future__ import annotations

import logging

from ..contracts import AgentExecutionStep
from ..errors import StepExecutionError
from ..models import Task, TaskType
from .base import Completed, Failed, StepExecutor, StepOutcome, StepRuntime, StepWork, normalize_output

logger = logging.getLogger(__name__)


class AgentExecutor(StepExecutor):
    task_type = TaskType.AGENT_EXECUTION

    def open_task(self, step, run, scope, branch, now) -> Task:
        task = super().open_task(step, run, scope, branch, now)
        task.assigned_to_agent_id = step.agent_identifier
        return task

    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        step: AgentExecutionStep = work.step
        try:
            result = await runtime.agent_runner.execute(
                step.agent_identifier, dict(step.configuration), dict(work.task.input)
            )
        except Exception as exc:
            logger.warning(f"Agent {step.agent_identifier} raised: {exc}")
            return Failed(
                StepExecutionError(
                    f"Agent '{step.agent_identifier}' raised {type(exc).__name__}: {exc}"
                )
            )
        if result.get("error") is not None:
            error = result["error"]
            details = error if isinstance(error, dict) else {}
            return Failed(
                StepExecutionError(f"Agent '{step.agent_identifier}' failed: {error}", details)
            )
        return Completed(normalize_output(result.get("output")))
