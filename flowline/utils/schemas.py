"""JSON Schema checks for form output and triggering data."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError


def schema_problem(schema: Dict[str, Any]) -> Optional[str]:
    """Return a message if ``schema`` itself is not a valid JSON Schema."""
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as exc:
        return exc.message
    return None


def validate_payload(schema: Optional[Dict[str, Any]], payload: Any) -> List[str]:
    """Return validation messages for ``payload``; empty when it conforms."""
    if not schema:
        return []
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path])
    return [
        f"{'.'.join(str(p) for p in error.path)}: {error.message}" if error.path else error.message
        for error in errors
    ]
