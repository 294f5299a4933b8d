"""Loading and structural validation of workflow definitions."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Mapping, Set

import yaml
from pydantic import ValidationError

from .constants import RESERVED_SCOPE_NAMES
from .contracts import (
    HumanTaskStep,
    JoinStep,
    ParallelStep,
    StepBase,
    WorkflowDefinition,
)
from .errors import DefinitionError
from .utils.schemas import schema_problem

logger = logging.getLogger(__name__)


def load_definition(data: Mapping[str, Any]) -> WorkflowDefinition:
    """Parse ``data`` into a definition and reject structurally invalid graphs."""
    try:
        definition = WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        issues = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        ]
        name = data.get("name", "<unnamed>") if isinstance(data, Mapping) else "<unnamed>"
        raise DefinitionError(f"Invalid workflow definition {name}", issues) from exc
    ensure_valid(definition)
    return definition


def load_definition_file(path: str) -> WorkflowDefinition:
    """Load a definition from a YAML or JSON document on disk."""
    if not os.path.exists(path):
        raise DefinitionError(f"Definition file {path} does not exist")
    with open(path) as f:
        if path.endswith(".json"):
            data = json.load(f)
        else:
            data = yaml.safe_load(f) or {}
    return load_definition(data)


def ensure_valid(definition: WorkflowDefinition) -> None:
    issues = validate_definition(definition)
    if issues:
        raise DefinitionError(f"Invalid workflow definition {definition.ref}", issues)
    for warning in collision_warnings(definition):
        logger.warning(f"{definition.ref}: {warning}")


def validate_definition(definition: WorkflowDefinition) -> List[str]:
    """Return every structural problem found in ``definition``."""
    issues: List[str] = []
    seen: Set[str] = set()
    for step in definition.iter_steps():
        if step.name in seen:
            issues.append(f"duplicate step name '{step.name}'")
        seen.add(step.name)

    top_level = {step.name for step in definition.steps}
    if definition.start_step not in top_level:
        issues.append(f"start_step '{definition.start_step}' is not a top-level step")

    joins_used: Set[str] = set()
    for step in definition.iter_steps():
        for transition in step.transitions:
            if not definition.has_step(transition.to):
                issues.append(
                    f"step '{step.name}' transitions to unknown step '{transition.to}'"
                )
        on_failure = step.error_handling.on_failure
        if on_failure.next_step and not definition.has_step(on_failure.next_step):
            issues.append(
                f"step '{step.name}' on_failure targets unknown step '{on_failure.next_step}'"
            )
        for namespace in (step.output_namespace, on_failure.error_output_namespace):
            if namespace in RESERVED_SCOPE_NAMES:
                issues.append(
                    f"step '{step.name}' may not write to reserved namespace '{namespace}'"
                )
        if isinstance(step, ParallelStep):
            joins_used.add(step.join_on)
            issues.extend(_validate_parallel(definition, step))

    for step in definition.steps:
        if isinstance(step, JoinStep) and step.name not in joins_used:
            issues.append(f"join step '{step.name}' is not the join_on of any parallel step")

    if definition.input_schema is not None:
        problem = schema_problem(definition.input_schema)
        if problem:
            issues.append(f"input_schema is not a valid JSON Schema: {problem}")
    for step in definition.iter_steps():
        if isinstance(step, HumanTaskStep) and step.form_schema is not None:
            problem = schema_problem(step.form_schema)
            if problem:
                issues.append(f"step '{step.name}' form_schema is invalid: {problem}")

    issues.extend(_unconditional_cycles(definition))
    return issues


def _validate_parallel(definition: WorkflowDefinition, step: ParallelStep) -> List[str]:
    issues: List[str] = []
    if not definition.has_step(step.join_on):
        issues.append(f"parallel step '{step.name}' joins on unknown step '{step.join_on}'")
    elif not isinstance(definition.step(step.join_on), JoinStep):
        issues.append(f"parallel step '{step.name}' join_on '{step.join_on}' is not a join step")

    branch_names: Set[str] = set()
    for branch in step.branches:
        if branch.name in branch_names:
            issues.append(f"parallel step '{step.name}' has duplicate branch '{branch.name}'")
        branch_names.add(branch.name)
        if not definition.has_step(branch.start_step):
            issues.append(
                f"branch '{branch.name}' of '{step.name}' starts at unknown step "
                f"'{branch.start_step}'"
            )
        elif branch.start_step == step.join_on:
            issues.append(f"branch '{branch.name}' of '{step.name}' starts at its own join")
        for inner in branch.steps:
            if isinstance(inner, (ParallelStep, JoinStep)):
                issues.append(
                    f"branch '{branch.name}' of '{step.name}' may not contain "
                    f"{inner.type} step '{inner.name}'"
                )
    return issues


def _unconditional_cycles(definition: WorkflowDefinition) -> List[str]:
    """Find loops made only of ``always`` transitions between non-waiting steps.

    Such a loop would advance forever without external input. Loops that pass
    through a human task are allowed since they suspend on every lap.
    """
    edges: Dict[str, List[str]] = {}
    for step in definition.iter_steps():
        if isinstance(step, HumanTaskStep):
            continue
        edges[step.name] = [t.to for t in step.transitions if t.condition_type == "always"]

    issues: List[str] = []
    visiting: Set[str] = set()
    done: Set[str] = set()

    def visit(name: str, path: List[str]) -> None:
        if name in done or name not in edges:
            return
        if name in visiting:
            cycle = path[path.index(name):] + [name]
            issues.append(f"unconditional cycle: {' -> '.join(cycle)}")
            return
        visiting.add(name)
        for target in edges[name]:
            visit(target, path + [name])
        visiting.discard(name)
        done.add(name)

    for name in edges:
        visit(name, [])
    return issues


def collision_warnings(definition: WorkflowDefinition) -> List[str]:
    """Report parallel branches that write into the same output namespace."""
    warnings: List[str] = []
    for step in definition.steps:
        if not isinstance(step, ParallelStep):
            continue
        owners: Dict[str, str] = {}
        for branch in step.branches:
            for namespace in _branch_namespaces(definition, branch.steps, branch.start_step):
                if namespace in owners and owners[namespace] != branch.name:
                    warnings.append(
                        f"branches '{owners[namespace]}' and '{branch.name}' of "
                        f"'{step.name}' both write namespace '{namespace}'; "
                        f"'{owners[namespace]}' wins at the join"
                    )
                else:
                    owners.setdefault(namespace, branch.name)
    return warnings


def _branch_namespaces(
    definition: WorkflowDefinition, steps: List[StepBase], start_step: str
) -> List[str]:
    namespaces = [s.output_namespace for s in steps if s.output_namespace]
    if not steps and definition.has_step(start_step):
        namespace = definition.step(start_step).output_namespace
        if namespace:
            namespaces.append(namespace)
    return namespaces
