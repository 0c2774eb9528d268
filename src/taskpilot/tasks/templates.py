"""Resolve ``{{...}}`` references in step arguments against context memory.

``{{step_N.field.sub}}`` walks the stored output of step N, ``{{step_N}}`` is
the whole output and ``{{name}}`` (or ``{{name.field}}`` for JSON values) reads
a context-memory variable. Unresolvable references are left as written.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from taskpilot.tools.conditions import to_text

TEMPLATE_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_STEP_PATH_RE = re.compile(r"^step_(\d+)(?:\.(.+))?$")

_MISSING = object()


def step_output_key(step_id: int) -> str:
    return f"step_{step_id}"


def load_step_output(memory: Mapping[str, str], step_id: int) -> Any:
    raw = memory.get(step_output_key(step_id))
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _walk(value: Any, path: str | None) -> Any:
    if not path:
        return value
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def lookup(expression: str, memory: Mapping[str, str]) -> Any:
    match = _STEP_PATH_RE.match(expression)
    if match:
        key = step_output_key(int(match.group(1)))
        if key not in memory:
            return _MISSING
        return _walk(load_step_output(memory, int(match.group(1))), match.group(2))

    if expression in memory:
        return memory[expression]
    name, _, path = expression.partition(".")
    if not path or name not in memory:
        return _MISSING
    try:
        decoded = json.loads(memory[name])
    except json.JSONDecodeError:
        return _MISSING
    return _walk(decoded, path)


def interpolate(text: str, memory: Mapping[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        value = lookup(match.group(1), memory)
        return match.group(0) if value is _MISSING else to_text(value)

    return TEMPLATE_RE.sub(_replace, text)


def resolve_templates(value: Any, memory: Mapping[str, str]) -> Any:
    """Resolve references in nested args; a lone reference keeps the raw value."""
    if isinstance(value, str):
        whole = TEMPLATE_RE.fullmatch(value.strip())
        if whole:
            resolved = lookup(whole.group(1), memory)
            return value if resolved is _MISSING else resolved
        return interpolate(value, memory)
    if isinstance(value, dict):
        return {key: resolve_templates(item, memory) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_templates(item, memory) for item in value]
    return value
