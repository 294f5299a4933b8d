"""Evaluation of transition condition trees against a run context.

Evaluation never raises: a missing field, a type mismatch or a bad pattern
makes the condition false and is recorded as a :class:`Diagnostic`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Tuple

from .contracts import ConditionGroup, SingleCondition
from .utils.paths import MISSING, lookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Diagnostic:
    field: str
    operator: str
    message: str


def evaluate(
    group: ConditionGroup,
    context: Mapping[str, Any],
    diagnostics: Optional[List[Diagnostic]] = None,
) -> bool:
    """Evaluate an AND/OR condition group.

    Children are evaluated in order and short-circuit like ``all``/``any``.
    """
    results = (_evaluate_node(node, context, diagnostics) for node in group.conditions)
    if group.logical_operator == "AND":
        return all(results)
    return any(results)


def _evaluate_node(
    node: SingleCondition | ConditionGroup,
    context: Mapping[str, Any],
    diagnostics: Optional[List[Diagnostic]],
) -> bool:
    if isinstance(node, ConditionGroup):
        return evaluate(node, context, diagnostics)
    return evaluate_condition(node, context, diagnostics)


def evaluate_condition(
    condition: SingleCondition,
    context: Mapping[str, Any],
    diagnostics: Optional[List[Diagnostic]] = None,
) -> bool:
    actual = lookup(context, condition.field)
    try:
        result, problem = _compare(condition.operator, actual, condition.value)
    except Exception as exc:
        result, problem = False, f"evaluation error: {exc}"
    if problem:
        logger.debug(f"condition {condition.field} {condition.operator}: {problem}")
        if diagnostics is not None:
            diagnostics.append(Diagnostic(condition.field, condition.operator, problem))
    return result


def _compare(operator: str, actual: Any, expected: Any) -> Tuple[bool, Optional[str]]:
    present = actual is not MISSING and actual is not None
    if operator == "exists":
        return present, None
    if operator == "not_exists":
        return not present, None
    if actual is MISSING:
        return False, "field not found"

    if operator in ("==", "!="):
        pair = _coerce_pair(actual, expected)
        equal = pair[0] == pair[1] if pair else actual == expected
        return (equal if operator == "==" else not equal), None

    if operator in (">", "<", ">=", "<="):
        pair = _coerce_pair(actual, expected)
        if pair is None:
            return False, f"cannot order {type(actual).__name__} against {type(expected).__name__}"
        left, right = pair
        if operator == ">":
            return left > right, None
        if operator == "<":
            return left < right, None
        if operator == ">=":
            return left >= right, None
        return left <= right, None

    if operator in ("contains", "not_contains"):
        found = _contains(actual, expected)
        if found is None:
            return False, f"contains is not applicable to {type(actual).__name__}"
        return (found if operator == "contains" else not found), None

    if operator == "regex":
        if not isinstance(expected, str):
            return False, "regex pattern must be a string"
        try:
            return re.search(expected, str(actual)) is not None, None
        except re.error as exc:
            return False, f"invalid regex: {exc}"

    return False, f"unknown operator {operator}"


def _contains(actual: Any, expected: Any) -> Optional[bool]:
    if isinstance(actual, str):
        if not isinstance(expected, str):
            return None
        return expected in actual
    if isinstance(actual, Mapping):
        return expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce_pair(actual: Any, expected: Any) -> Optional[Tuple[Any, Any]]:
    """Coerce both operands to a common numeric or temporal type."""
    left, right = _as_number(actual), _as_number(expected)
    if left is not None and right is not None:
        return left, right
    left_dt, right_dt = _as_datetime(actual), _as_datetime(expected)
    if left_dt is not None and right_dt is not None:
        return left_dt, right_dt
    return None
