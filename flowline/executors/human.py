"""Human task steps: review, data input and decision."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List

from ..contracts import DecisionStep, HumanTaskStep
from ..models import Task, TaskStatus, TaskType
from ..utils.schemas import validate_payload
from .base import StepExecutor, StepOutcome, StepRuntime, StepWork, Waiting

logger = logging.getLogger(__name__)


class HumanTaskExecutor(StepExecutor):
    """Creates an assigned task and parks the run until someone completes it."""

    suspends = True

    def __init__(self, task_type: TaskType) -> None:
        self.task_type = task_type

    def open_task(self, step: HumanTaskStep, run, scope, branch, now) -> Task:
        task = super().open_task(step, run, scope, branch, now)
        task.assigned_to_user_id = step.assigned_to_user_id
        task.assigned_to_role = step.assigned_role
        if step.assigned_to_user_id or step.assigned_role:
            task.status = TaskStatus.ASSIGNED
        else:
            task.status = TaskStatus.PENDING
        if step.deadline_minutes:
            task.deadline_at = now + timedelta(minutes=step.deadline_minutes)
        task.escalation_policy = step.escalation_policy
        return task

    def validate_output(self, step: HumanTaskStep, output: Dict[str, Any]) -> List[str]:
        errors = validate_payload(step.form_schema, output)
        if not errors and isinstance(step, DecisionStep) and step.outcome_field not in output:
            logger.warning(
                f"Decision step '{step.name}' completed without '{step.outcome_field}'"
            )
        return errors

    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        return Waiting()
