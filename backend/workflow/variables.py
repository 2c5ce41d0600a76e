"""Template resolution for ``{{token}}`` placeholders.

Tokens are looked up in order:

1. ``context.variables[token]``
2. ``trigger.<path>`` into the trigger payload
3. ``<step_id>.<path>`` into a previous step's output

Unmatched tokens are left verbatim and reported to the caller so they can
be flagged in the execution log. Resolution never raises.
"""

import json
import re
from typing import Any

from workflow.context import MISSING, ExecutionContext, lookup_path

PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def lookup_token(token: str, context: ExecutionContext) -> Any:
    """Resolve a single token to its raw value, or MISSING."""
    if token in context.variables and context.variables[token] is not None:
        return context.variables[token]

    head, _, rest = token.partition(".")
    if not rest:
        return MISSING

    if head == "trigger":
        value = lookup_path(context.trigger_payload, rest)
        if value is not MISSING and value is not None:
            return value

    if head in context.step_results:
        value = lookup_path(context.step_results[head], rest)
        if value is not None:
            return value
    return MISSING


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def resolve_with_report(template: str, context: ExecutionContext) -> tuple[str, list[str]]:
    """Resolve a template string and return it with the unresolved tokens."""
    unresolved: list[str] = []

    def _sub(match: re.Match) -> str:
        token = match.group(1)
        value = lookup_token(token, context)
        if value is MISSING:
            unresolved.append(token)
            return match.group(0)
        return _render(value)

    return PLACEHOLDER.sub(_sub, template), unresolved


def resolve(template: str, context: ExecutionContext) -> str:
    """Resolve every placeholder in ``template``; unmatched ones stay verbatim."""
    resolved, _ = resolve_with_report(template, context)
    return resolved


def resolve_value(value: Any, context: ExecutionContext, unresolved: list[str]) -> Any:
    """Resolve placeholders inside any JSON-like value.

    A string that is exactly one placeholder resolves to the raw value so
    numbers, lists and dicts keep their type.
    """
    if isinstance(value, str):
        match = PLACEHOLDER.fullmatch(value.strip())
        if match:
            raw = lookup_token(match.group(1), context)
            if raw is MISSING:
                unresolved.append(match.group(1))
                return value
            return raw
        resolved, missing = resolve_with_report(value, context)
        unresolved.extend(missing)
        return resolved
    if isinstance(value, dict):
        return {key: resolve_value(item, context, unresolved) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, context, unresolved) for item in value]
    return value


def resolve_config(config: dict, context: ExecutionContext) -> tuple[dict, list[str]]:
    """Recursively resolve all placeholders in a step config.

    Returns:
        Tuple of (resolved config, unresolved tokens)
    """
    unresolved: list[str] = []
    resolved = resolve_value(config or {}, context, unresolved)
    return resolved, unresolved
