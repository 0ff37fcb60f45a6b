"""Template and path resolution against an execution context."""

from __future__ import annotations

import json
import re
from typing import Any

from stepforge.core.context import ExecutionContext
from stepforge.core.expression import evaluate, get_member

_EXACT_TEMPLATE_RE = re.compile(r"^\{\{\s*([^}]+?)\s*\}\}$")
_INLINE_TEMPLATE_RE = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
_BRACKET_RE = re.compile(r"""\[(["']?)([^\]"']+)\1\]""")
_SIMPLE_PATH_RE = re.compile(r"""^[A-Za-z_$][\w$]*(?:\.[\w$]+|\[(["']?)[^\]"']+\1\])*$""")
_HYPHEN_PATH_RE = re.compile(r"""^[A-Za-z_$][\w$-]*(?:\.[\w$-]+|\[(["']?)[^\]"']+\1\])*$""")
_LITERAL_WORDS = ("true", "false", "null", "undefined", "True", "False", "None")


def normalize_path(path: str) -> list[str]:
    """``a[0].b["c"]`` -> ``["a", "0", "b", "c"]``."""
    return [part for part in _BRACKET_RE.sub(r".\2", path).split(".") if part]


def get_value_at_path(source: Any, path: str) -> Any:
    """Walk ``path`` through nested dicts and lists. Missing segments yield ``None``."""
    if not path:
        return source
    current = source
    for part in normalize_path(path):
        if current is None:
            return None
        current = get_member(current, part)
    return current


def is_template(value: Any) -> bool:
    return isinstance(value, str) and "{{" in value and "}}" in value


def evaluate_reference(expression: str, context: ExecutionContext) -> Any:
    """Plain dotted paths take the fast lookup route; anything else goes to the evaluator."""
    expression = expression.strip()
    namespace = context.namespace()
    if _SIMPLE_PATH_RE.match(expression) and expression not in _LITERAL_WORDS:
        return get_value_at_path(namespace, expression)
    # `fetch-data.value` is a step id with a hyphen, `n-1` is subtraction
    if _HYPHEN_PATH_RE.match(expression):
        found = get_value_at_path(namespace, expression)
        if found is not None:
            return found
    return evaluate(expression, namespace)


def resolve_template(value: str, context: ExecutionContext) -> Any:
    exact = _EXACT_TEMPLATE_RE.match(value)
    if exact:
        return evaluate_reference(exact.group(1), context)

    if "{{" not in value:
        return value

    def _replacer(match: re.Match) -> str:
        resolved = evaluate_reference(match.group(1), context)
        if resolved is None:
            return ""
        if isinstance(resolved, str):
            return resolved
        return json.dumps(resolved, default=str)

    return _INLINE_TEMPLATE_RE.sub(_replacer, value)


def resolve_value(value: Any, context: ExecutionContext) -> Any:
    if isinstance(value, str):
        return resolve_template(value, context)
    if isinstance(value, list):
        return [resolve_value(entry, context) for entry in value]
    if isinstance(value, dict):
        return {key: resolve_value(entry, context) for key, entry in value.items()}
    return value


def resolve_input_mapping(mapping: dict | None, context: ExecutionContext) -> Any:
    """Resolve a step's input mapping. An empty mapping passes the run input through."""
    if not mapping:
        return context.input if context.input is not None else {}
    return resolve_value(mapping, context)


def resolve_collection(path_or_template: str, context: ExecutionContext) -> Any:
    if is_template(path_or_template):
        return resolve_template(path_or_template, context)
    return evaluate_reference(path_or_template, context)
