"""Dotted path lookup over nested mappings and sequences."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def lookup(data: Any, path: str, default: Any = MISSING) -> Any:
    """Resolve ``a.b.0.c`` against ``data``.

    Mapping keys are matched first, then integer indices into sequences.
    Returns ``default`` when any segment is absent.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def merge_output(
    context: dict[str, Any], output: dict[str, Any], namespace: str | None = None
) -> dict[str, Any]:
    """Merge a step ``output`` into ``context`` in place.

    With a namespace the output is merged into ``context[namespace]``;
    otherwise its keys land at the top level.
    """
    if not namespace:
        context.update(output)
        return context
    existing = context.get(namespace)
    if isinstance(existing, dict):
        context[namespace] = {**existing, **output}
    else:
        context[namespace] = dict(output)
    return context
