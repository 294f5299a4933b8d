"""Step executors, one per step type."""

from __future__ import annotations

from typing import Dict

from ..contracts import STEP_TYPES, StepBase
from ..models import TaskType
from .agent import AgentExecutor
from .base import (
    Completed,
    Failed,
    FannedOut,
    Finished,
    StepExecutor,
    StepOutcome,
    StepRuntime,
    StepWork,
    Waiting,
    normalize_output,
)
from .end import EndExecutor
from .external_api import ExternalApiExecutor
from .human import HumanTaskExecutor
from .parallel import JoinExecutor, ParallelExecutor, arrive_at_join
from .sub_workflow import SubWorkflowExecutor

EXECUTORS: Dict[str, StepExecutor] = {
    "agent_execution": AgentExecutor(),
    "human_review": HumanTaskExecutor(TaskType.HUMAN_REVIEW),
    "data_input": HumanTaskExecutor(TaskType.DATA_INPUT),
    "decision": HumanTaskExecutor(TaskType.DECISION),
    "parallel": ParallelExecutor(),
    "join": JoinExecutor(),
    "sub_workflow": SubWorkflowExecutor(),
    "external_api_call": ExternalApiExecutor(),
    "end": EndExecutor(),
}

_missing = set(STEP_TYPES) ^ set(EXECUTORS)
if _missing:
    raise RuntimeError(f"Executor registry does not match step types: {sorted(_missing)}")


def get_executor(step: StepBase) -> StepExecutor:
    return EXECUTORS[step.type]


__all__ = [
    "EXECUTORS",
    "get_executor",
    "arrive_at_join",
    "normalize_output",
    "StepExecutor",
    "StepOutcome",
    "StepRuntime",
    "StepWork",
    "Completed",
    "Failed",
    "FannedOut",
    "Finished",
    "Waiting",
]
