"""Deadline escalation for human tasks.

Escalations are persisted as :class:`~flowline.models.ScheduledTimer` entries
so they survive restarts. The engine fires due entries under the run lock and
hands them to :meth:`EscalationScheduler.apply`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from .models import (
    EngineEvent,
    Notification,
    ScheduledTimer,
    Task,
    TaskStatus,
    TimerKind,
)

logger = logging.getLogger(__name__)

ESCALATION_EVENT = "task_escalated"


@dataclass
class EscalationResult:
    notifications: List[Notification] = field(default_factory=list)
    events: List[EngineEvent] = field(default_factory=list)


class EscalationScheduler:
    """Registers and applies escalation policies for human tasks."""

    def due_at(self, task: Task, now: datetime) -> Optional[datetime]:
        """Escalation fires ``after_minutes`` past the deadline, or past ``now`` without one."""
        policy = task.escalation_policy
        if policy is None:
            return None
        anchor = task.deadline_at or now
        return anchor + timedelta(minutes=policy.after_minutes)

    def register(self, task: Task, now: datetime) -> Optional[ScheduledTimer]:
        due = self.due_at(task, now)
        if due is None:
            return None
        logger.debug(f"Escalation for task {task.task_id} due at {due.isoformat()}")
        return ScheduledTimer(
            kind=TimerKind.ESCALATION,
            run_id=task.run_id,
            task_id=task.task_id,
            step_name=task.step_name,
            branch=task.branch,
            due_at=due,
            escalation_policy=task.escalation_policy,
        )

    def apply(self, task: Task, timer: ScheduledTimer, now: datetime) -> EscalationResult:
        """Apply the timer's policy to ``task`` in place."""
        result = EscalationResult()
        policy = timer.escalation_policy or task.escalation_policy
        if policy is None or not task.is_open:
            return result

        previous = task.assigned_to_user_id or task.assigned_to_role
        task.escalated_at = now
        task.updated_at = now
        if policy.action == "reassign_to_role":
            task.assigned_to_role = policy.target_role
            task.assigned_to_user_id = None
            task.is_delegated = False
            task.delegated_by = None
            task.status = TaskStatus.ASSIGNED
            result.notifications.append(
                Notification(
                    recipient=policy.target_role,
                    recipient_type="role",
                    kind="task_reassigned",
                    message=f"Task '{task.step_name}' was reassigned to role {policy.target_role} "
                    f"after missing its deadline",
                    run_id=task.run_id,
                    task_id=task.task_id,
                )
            )
        elif policy.action == "notify_manager_role":
            task.status = TaskStatus.REQUIRES_ESCALATION
            result.notifications.append(
                Notification(
                    recipient=policy.target_role,
                    recipient_type="role",
                    kind="task_escalated",
                    message=f"Task '{task.step_name}' assigned to {previous or 'nobody'} "
                    f"is overdue",
                    run_id=task.run_id,
                    task_id=task.task_id,
                )
            )
        elif policy.action == "custom_event":
            result.events.append(
                EngineEvent(
                    name=policy.custom_event_name,
                    run_id=task.run_id,
                    task_id=task.task_id,
                    payload={"step_name": task.step_name, "assignee": previous},
                )
            )

        result.events.append(
            EngineEvent(
                name=ESCALATION_EVENT,
                run_id=task.run_id,
                task_id=task.task_id,
                payload={
                    "step_name": task.step_name,
                    "action": policy.action,
                    "target_role": policy.target_role,
                    "previous_assignee": previous,
                },
            )
        )
        logger.info(f"Escalated task {task.task_id} ({policy.action})")
        return result
