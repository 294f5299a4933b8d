"""Runtime state of workflow runs and tasks."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .contracts import EscalationPolicy


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.IN_PROGRESS)

    @property
    def is_success(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.APPROVED, RunStatus.REJECTED)


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    REQUIRES_ESCALATION = "requires_escalation"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class TaskType(str, Enum):
    AGENT_EXECUTION = "agent_execution"
    HUMAN_REVIEW = "human_review"
    DATA_INPUT = "data_input"
    DECISION = "decision"
    SUB_WORKFLOW = "sub_workflow"
    EXTERNAL_API_CALL = "external_api_call"
    MANUAL_INTERVENTION = "manual_intervention"

    @property
    def is_human(self) -> bool:
        return self in (
            TaskType.HUMAN_REVIEW,
            TaskType.DATA_INPUT,
            TaskType.DECISION,
            TaskType.MANUAL_INTERVENTION,
        )


class BranchStatus(str, Enum):
    ACTIVE = "active"
    ARRIVED = "arrived"


class BranchCursor(BaseModel):
    """Position of one parallel branch inside its fork/join region."""

    name: str
    parallel_step: str
    join_step: str
    current_step: Optional[str] = None
    status: BranchStatus = BranchStatus.ACTIVE
    context: Dict[str, Any] = Field(default_factory=dict)


class RunFailure(BaseModel):
    reason: str
    step_name: Optional[str] = None
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class WorkflowRun(BaseModel):
    run_id: str = Field(default_factory=new_id)
    definition_name: str
    definition_version: int
    status: RunStatus = RunStatus.PENDING
    current_step_name: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    triggering_data: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: Optional[str] = None
    active_parallel_branches: Dict[str, BranchCursor] = Field(default_factory=dict)
    results_json: Optional[Dict[str, Any]] = None
    failure: Optional[RunFailure] = None
    parent_run_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Task(BaseModel):
    task_id: str = Field(default_factory=new_id)
    run_id: str
    step_name: str
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    branch: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    assigned_to_role: Optional[str] = None
    assigned_to_agent_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    deadline_at: Optional[datetime] = None
    escalation_policy: Optional[EscalationPolicy] = None
    escalated_at: Optional[datetime] = None
    is_delegated: bool = False
    delegated_by: Optional[str] = None
    retry_count: int = 0
    sub_run_id: Optional[str] = None
    completed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def is_assigned_to(self, user_id: Optional[str], role: Optional[str] = None) -> bool:
        if user_id and self.assigned_to_user_id == user_id:
            return True
        return bool(role) and self.assigned_to_role == role


class TaskComment(BaseModel):
    comment_id: str = Field(default_factory=new_id)
    task_id: str
    user_id: str
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class TimerKind(str, Enum):
    RETRY = "retry"
    ESCALATION = "escalation"


class ScheduledTimer(BaseModel):
    """Durable due-time entry for a retry or an escalation."""

    timer_id: str = Field(default_factory=new_id)
    kind: TimerKind
    run_id: str
    task_id: str
    step_name: str
    branch: Optional[str] = None
    due_at: datetime
    escalation_policy: Optional[EscalationPolicy] = None


class Notification(BaseModel):
    recipient: str
    recipient_type: str = "user"
    kind: str
    message: str
    run_id: Optional[str] = None
    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class EngineEvent(BaseModel):
    name: str
    run_id: Optional[str] = None
    task_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
