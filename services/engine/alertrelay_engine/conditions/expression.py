"""Restricted arithmetic/boolean expression evaluator for custom conditions.

Expressions are parsed with :mod:`ast` and walked against a whitelist; there
is no ``eval``. Allowed: numbers, booleans, variable names, ``+ - * / // %
**`` (bounded exponent), unary ``+ - not``, ``and``/``or``, comparisons
(chained too) and ``a if cond else b``. Products and powers are computed as
floats, so runaway magnitudes fail instead of stalling the worker.
"""

import ast
import math
import operator
from collections.abc import Mapping
from typing import Any

from alertrelay_engine.errors import ExpressionError

MAX_EXPONENT = 100

# Evaluated in floating point so magnitudes overflow instead of growing without bound
_FLOAT_OPS = (ast.Mult, ast.Pow)

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_CMP_OPS = {
    ast.Gt: operator.gt,
    ast.Lt: operator.lt,
    ast.GtE: operator.ge,
    ast.LtE: operator.le,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.And,
    ast.Or,
    ast.Not,
    ast.UAdd,
    ast.USub,
    *_BIN_OPS,
    *_CMP_OPS,
)


class SafeExpression:
    """A parsed, validated expression ready to evaluate many times."""

    def __init__(self, source: str, max_length: int = 1000, max_nodes: int = 100) -> None:
        if not isinstance(source, str) or not source.strip():
            raise ExpressionError("Expression is empty")
        if len(source) > max_length:
            raise ExpressionError(f"Expression longer than {max_length} characters")
        try:
            tree = ast.parse(source.strip(), mode="eval")
        except SyntaxError as exc:
            raise ExpressionError(f"Invalid expression syntax: {exc.msg}") from None

        nodes = list(ast.walk(tree))
        if len(nodes) > max_nodes:
            raise ExpressionError(f"Expression has more than {max_nodes} nodes")
        for node in nodes:
            if not isinstance(node, _ALLOWED_NODES):
                raise ExpressionError(f"Forbidden construct: {type(node).__name__}")
            if isinstance(node, ast.Constant) and (
                isinstance(node.value, complex) or not isinstance(node.value, (int, float, bool))
            ):
                raise ExpressionError(f"Forbidden constant: {node.value!r}")

        self.source = source
        self._tree = tree
        self.names = frozenset(n.id for n in nodes if isinstance(n, ast.Name))

    def evaluate(self, variables: Mapping[str, Any]) -> Any:
        """Evaluate against ``variables``; unknown names raise ExpressionError."""
        missing = self.names.difference(variables)
        if missing:
            raise ExpressionError(f"Unknown variable(s): {', '.join(sorted(missing))}")
        try:
            return self._eval(self._tree.body, variables)
        except ZeroDivisionError:
            raise ExpressionError("Division by zero") from None
        except (OverflowError, ValueError, TypeError) as exc:
            raise ExpressionError(f"Evaluation failed: {exc}") from None

    def _eval(self, node: ast.AST, env: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return env[node.id]
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, env)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand
        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, env)
            right = self._eval(node.right, env)
            if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
                raise ExpressionError(f"Exponent larger than {MAX_EXPONENT}")
            if isinstance(node.op, _FLOAT_OPS):
                left, right = float(left), float(right)
            result = _BIN_OPS[type(node.op)](left, right)
            if isinstance(result, complex):
                raise ExpressionError("Result is not a real number")
            if isinstance(result, float) and not math.isfinite(result):
                raise ExpressionError("Result is not finite")
            return result
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value: Any = True
                for item in node.values:
                    value = self._eval(item, env)
                    if not value:
                        return value
                return value
            value = False
            for item in node.values:
                value = self._eval(item, env)
                if value:
                    return value
            return value
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, env)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, env)
                if not _CMP_OPS[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval(node.test, env) else node.orelse
            return self._eval(branch, env)
        raise ExpressionError(f"Forbidden construct: {type(node).__name__}")  # pragma: no cover


def evaluate_expression(
    source: str,
    variables: Mapping[str, Any],
    max_length: int = 1000,
    max_nodes: int = 100,
) -> Any:
    """Parse and evaluate ``source`` in one step."""
    return SafeExpression(source, max_length=max_length, max_nodes=max_nodes).evaluate(variables)
