"""Prompt interpolation and skip conditions over a machine context."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Optional

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_CONDITION = re.compile(r"^\s*(!)?\s*context\.(\w+)\s*$")


def interpolate_prompt(template: str, context: Mapping[str, Any]) -> str:
    """Replace ``{key}`` placeholders with context values.

    Unknown placeholders are left untouched; mappings and lists are rendered
    as JSON.
    """

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in context or context[key] is None:
            return match.group(0)
        value = context[key]
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    return _PLACEHOLDER.sub(replace, template)


def evaluate_skip_condition(condition: Optional[str], context: Mapping[str, Any]) -> bool:
    """Evaluate ``context.field`` or ``!context.field`` against the context.

    Any other expression evaluates to ``False`` so the state runs.
    """
    if not condition:
        return False
    match = _CONDITION.match(condition)
    if match is None:
        return False
    negated, field = match.groups()
    value = bool(context.get(field))
    return not value if negated else value
