"""``{{ path }}`` placeholder rendering for external API calls."""

from __future__ import annotations

import json
import os
import re
from typing import Any, Mapping

from .paths import MISSING, lookup

PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
SECRET_PREFIX = "secrets."


def load_secrets(prefix: str, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect secrets from environment variables starting with ``prefix``."""
    env = os.environ if environ is None else environ
    return {key[len(prefix):]: value for key, value in env.items() if key.startswith(prefix)}


def render_string(
    template: str, context: Mapping[str, Any], secrets: Mapping[str, str] | None = None
) -> Any:
    """Render placeholders in ``template``.

    A template made of a single placeholder yields the raw value, so
    ``"{{ context.items }}"`` can produce a list. Placeholders that do not
    resolve are left verbatim.
    """
    secrets = secrets or {}

    def resolve(path: str) -> Any:
        if path.startswith(SECRET_PREFIX):
            return secrets.get(path[len(SECRET_PREFIX):], MISSING)
        return lookup(context, path)

    whole = PLACEHOLDER.fullmatch(template.strip())
    if whole:
        value = resolve(whole.group(1))
        return template if value is MISSING else value

    def substitute(match: re.Match) -> str:
        value = resolve(match.group(1))
        if value is MISSING:
            return match.group(0)
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return PLACEHOLDER.sub(substitute, template)


def render(
    template: Any, context: Mapping[str, Any], secrets: Mapping[str, str] | None = None
) -> Any:
    """Render every string found in ``template``, recursing into dicts and lists."""
    if isinstance(template, str):
        return render_string(template, context, secrets)
    if isinstance(template, dict):
        return {key: render(value, context, secrets) for key, value in template.items()}
    if isinstance(template, list):
        return [render(item, context, secrets) for item in template]
    return template
