"""Restricted expression evaluator for templates and branch conditions.

Workflow definitions may be written by users or generated by an LLM, so
expressions are parsed with ``ast`` and walked node by node. Only field
access, comparisons, boolean logic, simple arithmetic and a short list of
helpers are permitted; nothing is ever handed to ``eval()``.

Common JavaScript spellings (``===``, ``&&``, ``!``, ``true``, ``null``,
``?.``, ``.length``) are accepted and normalised before parsing.
"""

from __future__ import annotations

import ast
import json
import operator
import re
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from stepforge.core.errors import ExpressionError

MAX_EXPRESSION_LENGTH = 2000

_TOKEN_RE = re.compile(
    r"""
    (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    | (?P<op>===|!==|&&|\|\||\?\.|!(?!=))
    | (?P<word>[A-Za-z_][\w]*)
    | (?P<other>.)
    """,
    re.VERBOSE | re.DOTALL,
)

_OP_REWRITES = {
    "===": "==",
    "!==": "!=",
    "&&": " and ",
    "||": " or ",
    "?.": ".",
    "!": " not ",
}

_WORD_REWRITES = {
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}

_BINOPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_ORDERING = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

RISK_LEVELS = ("trivial", "low", "medium", "high", "critical")


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _yesterday() -> str:
    return (datetime.now(timezone.utc) - timedelta(days=1)).date().isoformat()


def _risk_below(actual: Any = None, threshold: Any = None) -> bool:
    actual, threshold = str(actual or ""), str(threshold or "")
    if actual not in RISK_LEVELS or threshold not in RISK_LEVELS:
        return False
    return RISK_LEVELS.index(actual) < RISK_LEVELS.index(threshold)


def _length(value: Any) -> int:
    try:
        return len(value)
    except TypeError:
        return 0


HELPERS = {
    "len": _length,
    "str": str,
    "int": int,
    "float": float,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "json": lambda value: json.dumps(value, default=str),
    "today": _today,
    "now": _now,
    "yesterday": _yesterday,
    "todayStart": lambda: f"{_today()}T00:00:00.000Z",
    "todayEnd": lambda: f"{_today()}T23:59:59.999Z",
    "riskBelow": _risk_below,
}

METHODS = {
    "includes": lambda obj, item: item in obj,
    "startsWith": lambda obj, prefix: str(obj).startswith(str(prefix)),
    "endsWith": lambda obj, suffix: str(obj).endswith(str(suffix)),
    "toLowerCase": lambda obj: str(obj).lower(),
    "toUpperCase": lambda obj: str(obj).upper(),
    "trim": lambda obj: str(obj).strip(),
}


def get_member(obj: Any, key: Any) -> Any:
    """Lenient single-segment lookup: dict keys and sequence indices only."""
    if isinstance(obj, dict):
        if key in obj:
            return obj[key]
        if isinstance(key, int) and not isinstance(key, bool):
            return obj.get(str(key))
        return None
    if isinstance(obj, (list, tuple, str)):
        if isinstance(key, str) and key.lstrip("-").isdigit():
            key = int(key)
        if isinstance(key, int) and not isinstance(key, bool) and -len(obj) <= key < len(obj):
            return obj[key]
    return None


def strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def normalize(expression: str) -> str:
    """Rewrite JavaScript-flavoured operators and literals into Python syntax."""
    out: list[str] = []
    for match in _TOKEN_RE.finditer(expression):
        kind = match.lastgroup
        text = match.group(0)
        if kind == "op":
            out.append(_OP_REWRITES[text])
        elif kind == "word":
            previous = "".join(out).rstrip()
            out.append(text if previous.endswith(".") else _WORD_REWRITES.get(text, text))
        else:
            out.append(text)
    return "".join(out).strip()


@lru_cache(maxsize=512)
def _parse(expression: str) -> ast.Expression:
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression exceeds {MAX_EXPRESSION_LENGTH} characters")
    normalized = normalize(expression)
    if not normalized:
        raise ExpressionError("Empty expression")
    try:
        return ast.parse(normalized, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e.msg}")


def _eval_node(node: ast.AST, namespace: dict) -> Any:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body, namespace)

    if isinstance(node, ast.Constant):
        if isinstance(node.value, (str, int, float, bool)) or node.value is None:
            return node.value
        raise ExpressionError(f"Unsupported literal: {node.value!r}")

    if isinstance(node, ast.Name):
        return namespace.get(node.id)

    if isinstance(node, ast.Attribute):
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to '{node.attr}' is not allowed")
        obj = _eval_node(node.value, namespace)
        if node.attr == "length" and isinstance(obj, (list, tuple, str)):
            return len(obj)
        return get_member(obj, node.attr)

    if isinstance(node, ast.Subscript):
        obj = _eval_node(node.value, namespace)
        key = _eval_node(node.slice, namespace)
        if isinstance(key, str) and key.startswith("_"):
            raise ExpressionError(f"Access to '{key}' is not allowed")
        return get_member(obj, key)

    if isinstance(node, ast.BoolOp):
        is_and = isinstance(node.op, ast.And)
        value: Any = None
        for operand in node.values:
            value = _eval_node(operand, namespace)
            if is_and and not value:
                return value
            if not is_and and value:
                return value
        return value

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, namespace)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, (ast.USub, ast.UAdd)):
            if not isinstance(operand, (int, float)) or isinstance(operand, bool):
                return None
            return -operand if isinstance(node.op, ast.USub) else operand
        raise ExpressionError(f"Unsupported unary operator: {type(node.op).__name__}")

    if isinstance(node, ast.BinOp):
        op_fn = _BINOPS.get(type(node.op))
        if op_fn is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = _eval_node(node.left, namespace)
        right = _eval_node(node.right, namespace)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return f"{_stringify(left)}{_stringify(right)}"
        # Arithmetic applies to numbers only
        if not (_is_number(left) and _is_number(right)):
            return None
        try:
            return op_fn(left, right)
        except (TypeError, ZeroDivisionError):
            return None

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, namespace)
        for op, comparator in zip(node.ops, node.comparators):
            right = _eval_node(comparator, namespace)
            if not _compare(op, left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, namespace):
            return _eval_node(node.body, namespace)
        return _eval_node(node.orelse, namespace)

    if isinstance(node, (ast.List, ast.Tuple)):
        return [_eval_node(elt, namespace) for elt in node.elts]

    if isinstance(node, ast.Dict):
        if any(k is None for k in node.keys):
            raise ExpressionError("Dict unpacking is not allowed")
        return {
            _eval_node(k, namespace): _eval_node(v, namespace)
            for k, v in zip(node.keys, node.values)
        }

    if isinstance(node, ast.Call):
        if node.keywords:
            raise ExpressionError("Keyword arguments are not allowed")
        args = [_eval_node(a, namespace) for a in node.args]
        if isinstance(node.func, ast.Name):
            fn = HELPERS.get(node.func.id)
            if fn is None:
                raise ExpressionError(f"Unknown function: {node.func.id}")
            try:
                return fn(*args)
            except (TypeError, ValueError) as e:
                raise ExpressionError(f"{node.func.id}() failed: {e}")
        if isinstance(node.func, ast.Attribute):
            method = METHODS.get(node.func.attr)
            if method is None:
                raise ExpressionError(f"Unknown method: {node.func.attr}")
            target = _eval_node(node.func.value, namespace)
            if target is None:
                return None
            try:
                return method(target, *args)
            except TypeError as e:
                raise ExpressionError(f"{node.func.attr}() failed: {e}")
        raise ExpressionError("Only direct helper calls are allowed")

    raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return strict_equals(left, right)
    if isinstance(op, ast.NotEq):
        return not strict_equals(left, right)
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    if isinstance(op, (ast.In, ast.NotIn)):
        try:
            contained = left in right
        except TypeError:
            contained = False
        return contained if isinstance(op, ast.In) else not contained
    try:
        return bool(_ORDERING[type(op)](left, right))
    except TypeError:
        return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def evaluate(expression: str, namespace: dict) -> Any:
    tree = _parse(expression.strip())
    return _eval_node(tree, namespace)


def evaluate_condition(expression: str, namespace: dict) -> bool:
    return bool(evaluate(expression, namespace))
