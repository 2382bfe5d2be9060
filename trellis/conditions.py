"""Sandboxed boolean expressions evaluated against an instance context.

Expressions are parsed with :mod:`ast` and interpreted by walking a small,
fixed set of node types; nothing is ever passed to ``eval``. Supported forms::

    approved == true
    $.review.score >= 7 and not flags.blocked
    region in ["EU", "UK"] || amount < 1000
    items[0].sku != null
"""

from __future__ import annotations

import ast
import functools
import logging
import re
from typing import Any, Mapping

from .errors import ConditionSyntaxError

logger = logging.getLogger(__name__)

_LITERAL_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
}

_STRING_RE = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.Constant,
    ast.List,
    ast.Tuple,
)


def _normalize(expression: str) -> str:
    """Translate JSONPath-ish and C-style spellings outside string literals."""
    parts = _STRING_RE.split(expression)
    for i in range(0, len(parts), 2):
        segment = parts[i]
        segment = segment.replace("$.", "")
        segment = segment.replace("&&", " and ").replace("||", " or ")
        segment = re.sub(r"!(?!=)", " not ", segment)
        parts[i] = segment
    return "".join(parts).strip()


@functools.lru_cache(maxsize=512)
def compile_condition(expression: str) -> ast.Expression:
    """Parse ``expression`` and reject anything outside the grammar."""
    normalized = _normalize(expression)
    if not normalized:
        raise ConditionSyntaxError(expression, "empty expression")
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise ConditionSyntaxError(expression, exc.msg) from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConditionSyntaxError(
                expression, f"unsupported syntax: {type(node).__name__}"
            )
        if isinstance(node, ast.Subscript) and not isinstance(node.slice, ast.Constant):
            raise ConditionSyntaxError(expression, "subscripts must be literals")
    return tree


def evaluate_condition(expression: str | None, context: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``context``.

    An empty or missing expression is unconditionally true. Lookups of missing
    keys yield ``None``; ordering comparisons involving ``None`` or mismatched
    types are false rather than errors.
    """
    if expression is None or not expression.strip():
        return True
    tree = compile_condition(expression)
    return bool(_Evaluator(context).visit(tree.body))


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]) -> None:
        self._context = context

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self.visit(v) for v in node.values)
            return any(self.visit(v) for v in node.values)

        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(operand, (int, float)) and not isinstance(operand, bool):
                return -operand
            return None

        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.visit(comparator)
                if not _compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(elt) for elt in node.elts]

        if isinstance(node, ast.Name):
            if node.id in self._context:
                return self._context[node.id]
            return _LITERAL_NAMES.get(node.id)

        if isinstance(node, ast.Attribute):
            return _lookup(self.visit(node.value), node.attr)

        if isinstance(node, ast.Subscript):
            return _lookup(self.visit(node.value), node.slice.value)

        # compile_condition rejects every other node type
        raise ConditionSyntaxError(ast.dump(node), "unsupported syntax")


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, (list, tuple)) and isinstance(key, int):
        if -len(container) <= key < len(container):
            return container[key]
    return None


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return left == right
    if isinstance(op, ast.NotEq):
        return left != right
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    if isinstance(op, (ast.In, ast.NotIn)):
        try:
            found = left in right
        except TypeError:
            found = False
        return found if isinstance(op, ast.In) else not found
    if left is None or right is None:
        return False
    try:
        if isinstance(op, ast.Lt):
            return left < right
        if isinstance(op, ast.LtE):
            return left <= right
        if isinstance(op, ast.Gt):
            return left > right
        if isinstance(op, ast.GtE):
            return left >= right
    except TypeError:
        logger.debug(f"Ordering comparison between {left!r} and {right!r} is false")
        return False
    return False


def resolve_path(path: str, context: Mapping[str, Any]) -> Any:
    """Resolve a lookup expression such as ``$.customer.email`` to its value."""
    tree = compile_condition(path)
    return _Evaluator(context).visit(tree.body)
