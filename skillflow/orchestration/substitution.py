"""Fill ``{{name}}`` placeholders in step arguments from a variables map.

Substitution walks the argument structure and only rewrites string leaves,
so values containing quotes, braces or newlines never have to be escaped.
Unknown placeholders are left as written.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

from ..schemas.skills import SkillStep

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def substitute_value(value: Any, variables: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return PLACEHOLDER_PATTERN.sub(lambda match: str(variables.get(match.group(1), match.group(0))), value)
    if isinstance(value, list):
        return [substitute_value(item, variables) for item in value]
    if isinstance(value, tuple):
        return tuple(substitute_value(item, variables) for item in value)
    if isinstance(value, dict):
        return {key: substitute_value(item, variables) for key, item in value.items()}
    return value


def substitute_args(args: Mapping[str, Any], variables: Mapping[str, str]) -> dict[str, Any]:
    if not variables:
        return dict(args)
    return {key: substitute_value(value, variables) for key, value in args.items()}


def substitute_plan(
    plan: Sequence[SkillStep],
    variables: Mapping[str, str],
    *,
    start: int = 0,
) -> list[SkillStep]:
    """Return ``plan`` with placeholders filled in every step from ``start`` on."""
    updated = list(plan)
    if not variables:
        return updated
    for index in range(start, len(updated)):
        step = updated[index]
        args = substitute_args(step.args, variables)
        if args != step.args:
            updated[index] = step.model_copy(update={"args": args})
    return updated


__all__ = ["PLACEHOLDER_PATTERN", "substitute_args", "substitute_plan", "substitute_value"]
