"""Inline arithmetic: ``=2*(3+4)`` shows ``14``.

Queries starting with ``=`` are claimed exclusively. Other queries are only
answered when they parse as an arithmetic expression with an operator, so
typing an application name never produces a calculator row.
"""

from __future__ import annotations

import ast
import math
import operator
from typing import TYPE_CHECKING

from polymodo.models.query import ActionOutcome, Candidate

if TYPE_CHECKING:
    from polymodo.cancel import CancelToken
    from polymodo.models.query import Query
    from polymodo.registry import AppContext

_PREFIX = "="
_MAX_EXPONENT = 1000
# Integers stay well below the 4300-digit str() limit and evaluate in microseconds.
_MAX_BITS = 4096

_BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY = {ast.UAdd: operator.pos, ast.USub: operator.neg}


class _NotArithmetic(Exception):
    pass


def _bounded(value: float | int) -> float | int:
    if isinstance(value, int) and value.bit_length() > _MAX_BITS:
        raise _NotArithmetic("integer too large")
    return value


def _check_cost(op: ast.operator, left: float | int, right: float | int) -> None:
    """Reject an integer operation whose result would exceed the size limit.

    Checked before computing, since a single ``**`` or ``*`` on large
    operands can block for seconds.
    """
    if isinstance(op, ast.Pow):
        if abs(right) > _MAX_EXPONENT:
            raise _NotArithmetic("exponent too large")
        if isinstance(left, int) and isinstance(right, int) and right > 0:
            if left.bit_length() * right > _MAX_BITS:
                raise _NotArithmetic("power too large")
    elif isinstance(op, ast.Mult) and isinstance(left, int) and isinstance(right, int):
        if left.bit_length() + right.bit_length() > _MAX_BITS:
            raise _NotArithmetic("product too large")


def _eval(node: ast.AST) -> float | int:
    if isinstance(node, ast.Expression):
        return _eval(node.body)
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return _bounded(node.value)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY:
        return _UNARY[type(node.op)](_eval(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY:
        left, right = _eval(node.left), _eval(node.right)
        _check_cost(node.op, left, right)
        return _bounded(_BINARY[type(node.op)](left, right))
    raise _NotArithmetic(type(node).__name__)


def evaluate(expression: str) -> float | int | None:
    """Evaluate an arithmetic expression, or ``None`` if it is not one."""
    expression = expression.replace("^", "**").strip()
    if not expression:
        return None
    try:
        tree = ast.parse(expression, mode="eval")
        value = _eval(tree)
    except (SyntaxError, _NotArithmetic, ArithmeticError, ValueError):
        return None
    if not isinstance(value, (int, float)):
        return None  # e.g. complex from a fractional power of a negative number
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def format_value(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return f"{value:.12g}" if isinstance(value, float) else str(value)


class CalculatorApp:
    app_id = "calculator"

    @classmethod
    def from_context(cls, context: AppContext) -> CalculatorApp:
        return cls()

    def claims(self, text: str) -> bool:
        return text.lstrip().startswith(_PREFIX)

    async def list(self, query: Query, token: CancelToken) -> list[Candidate]:
        text = query.text.strip()
        claimed = text.startswith(_PREFIX)
        expression = text[len(_PREFIX) :] if claimed else text
        if not claimed:
            try:
                tree = ast.parse(expression.replace("^", "**"), mode="eval")
            except SyntaxError:
                return []
            if not isinstance(tree.body, ast.BinOp):
                return []
        value = evaluate(expression)
        if value is None:
            return []
        result = format_value(value)
        return [
            Candidate(
                app_id=self.app_id,
                key=result,
                title=result,
                subtitle=expression.strip(),
                icon="accessories-calculator",
                score=1.0,
                sort_text=result,
            )
        ]

    async def act(self, candidate: Candidate, action_id: str) -> ActionOutcome:
        return ActionOutcome(
            ok=True,
            app_id=self.app_id,
            key=candidate.key,
            action_id=action_id,
            message=candidate.title,
        )
