"""Selection of the next step from a step's ordered transitions."""

from __future__ import annotations

import logging
from collections import ChainMap
from typing import Any, List, Mapping, Optional

from .conditions import Diagnostic, evaluate
from .contracts import StepBase

logger = logging.getLogger(__name__)


def build_scope(
    context: Mapping[str, Any], output: Optional[Mapping[str, Any]] = None
) -> Mapping[str, Any]:
    """Expose ``output.*`` (latest step output) and ``context.*`` next to the bare context."""
    return ChainMap({"output": dict(output or {}), "context": context}, context)


def resolve_next_step(
    step: StepBase,
    context: Mapping[str, Any],
    output: Optional[Mapping[str, Any]] = None,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> Optional[str]:
    """Return the target of the first matching transition, or ``None``.

    Transitions are tried strictly in declaration order; ``always`` matches
    unconditionally.
    """
    scope = build_scope(context, output)
    collected: List[Diagnostic] = [] if diagnostics is None else diagnostics
    for transition in step.transitions:
        if transition.condition_type == "always":
            return transition.to
        if evaluate(transition.condition_group, scope, collected):
            return transition.to
    if step.transitions:
        logger.info(
            f"No transition matched for step '{step.name}'"
            + (f" ({len(collected)} diagnostics)" if collected else "")
        )
    return None
