"""Restricted arithmetic expressions over named fields.

Used for formula-derived synthetic fields and for derived canonical fields
(ROI, click-through rate). Only literals, field names, arithmetic,
comparisons, boolean operators, conditional expressions and a small
whitelist of functions are allowed; anything else is rejected at compile
time.
"""

from __future__ import annotations

import ast
import math
import operator
from collections.abc import Callable, Mapping
from typing import Any

_BIN_OPS: dict[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_CMP_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "log": math.log,
    "sqrt": math.sqrt,
}


class FormulaError(ValueError):
    """Raised when an expression is invalid or references unknown names."""


class Formula:
    """A compiled, validated expression.

    Example:
        >>> Formula("(revenue - spend) / spend").evaluate({"revenue": 150, "spend": 100})
        0.5
    """

    def __init__(self, expression: str) -> None:
        self.expression = expression
        try:
            self._tree = ast.parse(expression, mode="eval")
        except SyntaxError as e:
            raise FormulaError(f"Invalid expression {expression!r}: {e.msg}") from e
        self.names = self._validate(self._tree.body)

    def _validate(self, node: ast.AST) -> set[str]:
        names: set[str] = set()
        for child in ast.walk(node):
            if isinstance(child, ast.Name):
                if child.id not in _FUNCTIONS and child.id != "random":
                    names.add(child.id)
            elif isinstance(child, ast.Call):
                if not isinstance(child.func, ast.Name) or (
                    child.func.id not in _FUNCTIONS and child.func.id != "random"
                ):
                    raise FormulaError(f"Function not allowed in {self.expression!r}")
                if child.keywords:
                    raise FormulaError(f"Keyword arguments not allowed in {self.expression!r}")
            elif isinstance(
                child,
                ast.Expression
                | ast.Constant
                | ast.BinOp
                | ast.UnaryOp
                | ast.BoolOp
                | ast.Compare
                | ast.IfExp
                | ast.Load
                | ast.operator
                | ast.unaryop
                | ast.cmpop
                | ast.boolop,
            ):
                continue
            else:
                raise FormulaError(
                    f"Unsupported syntax {type(child).__name__} in {self.expression!r}"
                )
        return names

    def evaluate(
        self,
        values: Mapping[str, Any],
        random: Callable[[], float] | None = None,
    ) -> Any:
        """Evaluate against ``values``.

        Returns None when a referenced field is missing or None, or when the
        arithmetic is undefined (division by zero, domain errors).
        """
        if any(values.get(name) is None for name in self.names):
            return None
        try:
            return self._eval(self._tree.body, values, random)
        except (ZeroDivisionError, ValueError, OverflowError, TypeError):
            return None

    def _eval(
        self,
        node: ast.AST,
        values: Mapping[str, Any],
        random: Callable[[], float] | None,
    ) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return values[node.id]
        if isinstance(node, ast.BinOp):
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise FormulaError(f"Operator not allowed in {self.expression!r}")
            return op(self._eval(node.left, values, random), self._eval(node.right, values, random))
        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self._eval(node.operand, values, random))
        if isinstance(node, ast.BoolOp):
            results = (self._eval(v, values, random) for v in node.values)
            return all(results) if isinstance(node.op, ast.And) else any(results)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, values, random)
            for op_node, comparator in zip(node.ops, node.comparators, strict=True):
                right = self._eval(comparator, values, random)
                if not _CMP_OPS[type(op_node)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            branch = node.body if self._eval(node.test, values, random) else node.orelse
            return self._eval(branch, values, random)
        if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
            args = [self._eval(a, values, random) for a in node.args]
            if node.func.id == "random":
                if random is None:
                    raise FormulaError("random() is only available during generation")
                return random()
            return _FUNCTIONS[node.func.id](*args)
        raise FormulaError(f"Unsupported syntax in {self.expression!r}")
