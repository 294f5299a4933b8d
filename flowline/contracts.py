"""Workflow definition contracts.

Definitions are declarative documents: a named, versioned graph of steps
joined by conditional transitions. They are loaded once, validated by
:mod:`flowline.definitions` and never mutated afterwards.
"""

from __future__ import annotations

import re
from functools import cached_property
from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .constants import (
    DEFAULT_OUTCOME_FIELD,
    DEFAULT_SUCCESS_STATUS_CODES,
)

ComparisonOperator = Literal[
    "==",
    "!=",
    ">",
    "<",
    ">=",
    "<=",
    "contains",
    "not_contains",
    "exists",
    "not_exists",
    "regex",
]

VALUELESS_OPERATORS = frozenset({"exists", "not_exists"})

STEP_TYPES = (
    "agent_execution",
    "human_review",
    "data_input",
    "decision",
    "parallel",
    "join",
    "sub_workflow",
    "external_api_call",
    "end",
)

HUMAN_STEP_TYPES = frozenset({"human_review", "data_input", "decision"})


class ContractModel(BaseModel):
    """Base for definition documents: immutable and strict about unknown keys."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class SingleCondition(ContractModel):
    """Compare the value at ``field`` with ``value`` using ``operator``."""

    field: str = Field(min_length=1)
    operator: ComparisonOperator
    value: Any = None

    @model_validator(mode="after")
    def _check_value(self) -> "SingleCondition":
        if self.operator in VALUELESS_OPERATORS:
            return self
        if "value" not in self.model_fields_set:
            raise ValueError(f"operator '{self.operator}' requires a value")
        if self.operator == "regex":
            if not isinstance(self.value, str):
                raise ValueError("regex operator requires a string pattern")
            try:
                re.compile(self.value)
            except re.error as exc:
                raise ValueError(f"invalid regex pattern {self.value!r}: {exc}") from exc
        return self


class ConditionGroup(ContractModel):
    """AND/OR composition of conditions and nested groups."""

    logical_operator: Literal["AND", "OR"]
    conditions: List[Union[SingleCondition, ConditionGroup]] = Field(min_length=1)


class Transition(ContractModel):
    to: str
    description: Optional[str] = None
    condition_type: Literal["always", "conditional"] = "conditional"
    condition_group: Optional[ConditionGroup] = None

    @model_validator(mode="after")
    def _check_condition(self) -> "Transition":
        if self.condition_type == "conditional" and self.condition_group is None:
            raise ValueError(f"conditional transition to '{self.to}' needs a condition_group")
        if self.condition_type == "always" and self.condition_group is not None:
            raise ValueError(f"always transition to '{self.to}' must not have a condition_group")
        return self


class RetryPolicy(ContractModel):
    max_attempts: int = Field(default=1, ge=1)
    delay_seconds: float = Field(default=0.0, ge=0)
    backoff_strategy: Literal["fixed", "exponential"] = "fixed"
    jitter: bool = False


class OnFailureAction(ContractModel):
    action: Literal[
        "fail_workflow",
        "transition_to_step",
        "continue_with_error",
        "manual_intervention",
    ] = "fail_workflow"
    next_step: Optional[str] = None
    error_output_namespace: Optional[str] = None

    @model_validator(mode="after")
    def _check_next_step(self) -> "OnFailureAction":
        if self.action == "transition_to_step" and not self.next_step:
            raise ValueError("transition_to_step requires next_step")
        return self


class ErrorHandling(ContractModel):
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    on_failure: OnFailureAction = Field(default_factory=OnFailureAction)


class EscalationPolicy(ContractModel):
    after_minutes: int = Field(gt=0)
    action: Literal["reassign_to_role", "notify_manager_role", "custom_event"]
    target_role: Optional[str] = None
    custom_event_name: Optional[str] = None

    @model_validator(mode="after")
    def _check_target(self) -> "EscalationPolicy":
        if self.action in ("reassign_to_role", "notify_manager_role") and not self.target_role:
            raise ValueError(f"escalation action '{self.action}' requires target_role")
        if self.action == "custom_event" and not self.custom_event_name:
            raise ValueError("escalation action 'custom_event' requires custom_event_name")
        return self


class SuccessCriteria(ContractModel):
    status_codes: List[int] = Field(
        default_factory=lambda: list(DEFAULT_SUCCESS_STATUS_CODES), min_length=1
    )


class ExternalApiCallConfig(ContractModel):
    url_template: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers_template: Dict[str, str] = Field(default_factory=dict)
    query_params_template: Dict[str, str] = Field(default_factory=dict)
    body_template: Any = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    success_criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)


class StepBase(ContractModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    output_namespace: Optional[str] = None
    default_input: Dict[str, Any] = Field(default_factory=dict)
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)
    transitions: List[Transition] = Field(default_factory=list)


class AgentExecutionStep(StepBase):
    type: Literal["agent_execution"]
    agent_identifier: str = Field(min_length=1)
    configuration: Dict[str, Any] = Field(default_factory=dict)


class HumanTaskStep(StepBase):
    assigned_role: Optional[str] = None
    assigned_to_user_id: Optional[str] = None
    form_schema: Optional[Dict[str, Any]] = None
    deadline_minutes: Optional[int] = Field(default=None, gt=0)
    escalation_policy: Optional[EscalationPolicy] = None

    @model_validator(mode="after")
    def _check_assignment(self) -> "HumanTaskStep":
        if self.assigned_role and self.assigned_to_user_id:
            raise ValueError(
                f"step '{self.name}' may be assigned to a role or a user, not both"
            )
        return self


class HumanReviewStep(HumanTaskStep):
    type: Literal["human_review"]


class DataInputStep(HumanTaskStep):
    type: Literal["data_input"]


class DecisionStep(HumanTaskStep):
    type: Literal["decision"]
    outcome_field: str = DEFAULT_OUTCOME_FIELD


class ParallelBranch(ContractModel):
    name: str = Field(min_length=1)
    start_step: str
    steps: List[StepDefinition] = Field(default_factory=list)


class ParallelStep(StepBase):
    type: Literal["parallel"]
    branches: List[ParallelBranch] = Field(min_length=1)
    join_on: str


class JoinStep(StepBase):
    type: Literal["join"]


class SubWorkflowStep(StepBase):
    type: Literal["sub_workflow"]
    sub_workflow_name: str = Field(min_length=1)
    sub_workflow_version: Optional[int] = Field(default=None, ge=1)
    input_mapping: Dict[str, str] = Field(default_factory=dict)


class ExternalApiCallStep(StepBase):
    type: Literal["external_api_call"]
    api_call: ExternalApiCallConfig


class EndStep(StepBase):
    type: Literal["end"]
    final_status: Literal["completed", "approved", "rejected", "failed"] = "completed"


StepDefinition = Annotated[
    Union[
        AgentExecutionStep,
        HumanReviewStep,
        DataInputStep,
        DecisionStep,
        ParallelStep,
        JoinStep,
        SubWorkflowStep,
        ExternalApiCallStep,
        EndStep,
    ],
    Field(discriminator="type"),
]


class WorkflowDefinition(ContractModel):
    """A named, versioned graph of steps."""

    name: str = Field(min_length=1)
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    start_step: str
    steps: List[StepDefinition] = Field(min_length=1)
    input_schema: Optional[Dict[str, Any]] = None
    no_match_policy: Optional[Literal["fail", "complete"]] = None

    @property
    def ref(self) -> str:
        return f"{self.name}@v{self.version}"

    def iter_steps(self) -> Iterator[StepBase]:
        """Yield every step, including the ones nested in parallel branches."""
        for step in self.steps:
            yield step
            if isinstance(step, ParallelStep):
                for branch in step.branches:
                    yield from branch.steps

    @cached_property
    def step_index(self) -> Dict[str, StepBase]:
        return {step.name: step for step in self.iter_steps()}

    def has_step(self, name: str) -> bool:
        return name in self.step_index

    def step(self, name: str) -> StepBase:
        try:
            return self.step_index[name]
        except KeyError:
            raise KeyError(f"step '{name}' is not defined in {self.ref}") from None

    def parallel_for_join(self, join_name: str) -> Optional[ParallelStep]:
        for step in self.steps:
            if isinstance(step, ParallelStep) and step.join_on == join_name:
                return step
        return None


ConditionGroup.model_rebuild()
ParallelBranch.model_rebuild()
ParallelStep.model_rebuild()
WorkflowDefinition.model_rebuild()
