"""Exception hierarchy for flowline."""

from __future__ import annotations

from typing import Any, Optional


class FlowlineError(Exception):
    """Base class for all engine errors."""


class DefinitionError(FlowlineError):
    """A workflow definition failed structural validation at load time."""

    def __init__(self, message: str, issues: Optional[list[str]] = None) -> None:
        self.issues = list(issues or [])
        if self.issues:
            message = f"{message}: {'; '.join(self.issues)}"
        super().__init__(message)


class DefinitionNotFoundError(FlowlineError):
    def __init__(self, name: str, version: Optional[int] = None) -> None:
        self.name = name
        self.version = version
        label = f"{name} v{version}" if version is not None else f"{name} (latest)"
        super().__init__(f"Workflow definition {label} not found")


class RunNotFoundError(FlowlineError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Workflow run {run_id} not found")


class TaskNotFoundError(FlowlineError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class InvalidTaskStateError(FlowlineError):
    """The requested task operation is not allowed in the task's current state."""


class TaskOutputValidationError(FlowlineError):
    """Submitted task output does not satisfy the step's form schema."""

    def __init__(self, task_id: str, errors: list[str]) -> None:
        self.task_id = task_id
        self.errors = errors
        super().__init__(f"Output for task {task_id} is invalid: {'; '.join(errors)}")


class StartDataValidationError(FlowlineError):
    """Triggering data does not satisfy the definition's input schema."""

    def __init__(self, definition: str, errors: list[str]) -> None:
        self.definition = definition
        self.errors = errors
        super().__init__(
            f"Triggering data for {definition} is invalid: {'; '.join(errors)}"
        )


class StepExecutionError(FlowlineError):
    """A step failed while executing; handled by the retry controller."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class TransitionExhaustedError(FlowlineError):
    """No outbound transition of a step matched the run context."""

    reason = "transition_exhausted"

    def __init__(self, step_name: str) -> None:
        self.step_name = step_name
        super().__init__(f"No transition matched for step '{step_name}'")


class InvalidRunStateError(FlowlineError):
    """The requested run operation is not allowed in the run's current state."""
