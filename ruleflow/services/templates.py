"""Placeholder substitution for action text fields."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Optional

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(template: Optional[str], payload: Optional[Mapping[str, Any]]) -> str:
    """Replace ``{{field}}`` placeholders with payload values; unknown fields render empty."""
    if not template:
        return ""
    if not isinstance(template, str):
        template = str(template)
    values = payload or {}

    def _sub(match: re.Match) -> str:
        return format_value(values.get(match.group(1)))

    return PLACEHOLDER_RE.sub(_sub, template)


def placeholders(template: Optional[str]) -> list[str]:
    if not template:
        return []
    return PLACEHOLDER_RE.findall(str(template))
