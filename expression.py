# expression.py
"""Restricted arithmetic evaluator for computed dataset fields.

Only numbers, the item's numeric fields, arithmetic operators and a fixed
set of math functions are reachable. Expressions are parsed with ``ast`` and
walked node by node; nothing is ever handed to ``eval``.
"""
import ast
import math
import operator
from typing import Any, Callable, Dict, Mapping
from exceptions import ExpressionError

BINARY_OPERATORS: Dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

UNARY_OPERATORS: Dict[type, Callable[[float], float]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

FUNCTIONS: Dict[str, Callable[..., float]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sqrt": math.sqrt,
    "floor": math.floor,
    "ceil": math.ceil,
    "log": math.log,
    "log10": math.log10,
    "exp": math.exp,
    "pow": math.pow,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
}

CONSTANTS = {"pi": math.pi, "e": math.e, "PI": math.pi, "E": math.e}

# "Math.sqrt(x)" and "math.sqrt(x)" both resolve to the whitelisted function
NAMESPACES = ("Math", "math")

MAX_EXPRESSION_LENGTH = 1000
MAX_EXPONENT = 1000


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def numeric_fields(item: Mapping[str, Any]) -> Dict[str, float]:
    return {key: value for key, value in item.items() if isinstance(key, str) and _is_number(value)}


class _Evaluator:
    def __init__(self, expression: str, variables: Mapping[str, float]):
        self.expression = expression
        self.variables = variables

    def fail(self, reason: str) -> ExpressionError:
        return ExpressionError(f"Failed to evaluate expression {self.expression!r}: {reason}")

    def visit(self, node: ast.AST) -> float:
        if isinstance(node, ast.Expression):
            return self.visit(node.body)
        if isinstance(node, ast.Constant):
            if not _is_number(node.value):
                raise self.fail(f"unsupported literal {node.value!r}")
            return node.value
        if isinstance(node, ast.Name):
            if node.id in self.variables:
                return self.variables[node.id]
            if node.id in CONSTANTS:
                return CONSTANTS[node.id]
            raise self.fail(f"unknown name {node.id!r}")
        if isinstance(node, ast.Attribute):
            if isinstance(node.value, ast.Name) and node.value.id in NAMESPACES and node.attr in CONSTANTS:
                return CONSTANTS[node.attr]
            raise self.fail("attribute access is not allowed")
        if isinstance(node, ast.BinOp):
            op = BINARY_OPERATORS.get(type(node.op))
            if op is None:
                raise self.fail(f"operator {type(node.op).__name__} is not allowed")
            left = self.visit(node.left)
            right = self.visit(node.right)
            if isinstance(node.op, ast.Pow):
                if abs(right) > MAX_EXPONENT:
                    raise self.fail("exponent too large")
                # float powers overflow instead of building huge integers
                left = float(left)
            return self.real(op(left, right))
        if isinstance(node, ast.UnaryOp):
            op = UNARY_OPERATORS.get(type(node.op))
            if op is None:
                raise self.fail(f"operator {type(node.op).__name__} is not allowed")
            return self.real(op(self.visit(node.operand)))
        if isinstance(node, ast.Call):
            if node.keywords:
                raise self.fail("keyword arguments are not allowed")
            return self.real(self._function(node.func)(*[self.visit(arg) for arg in node.args]))
        raise self.fail(f"{type(node).__name__} is not allowed")

    def real(self, value: Any) -> float:
        if not _is_number(value):
            raise self.fail(f"result {value!r} is not a real number")
        return value

    def _function(self, func: ast.AST) -> Callable[..., float]:
        if isinstance(func, ast.Name):
            name = func.id
        elif isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name) and func.value.id in NAMESPACES:
            name = func.attr
        else:
            raise self.fail("only whitelisted functions can be called")
        if name not in FUNCTIONS:
            raise self.fail(f"function {name!r} is not allowed")
        return FUNCTIONS[name]


def evaluate(expression: str, variables: Mapping[str, Any]) -> float:
    """Evaluate expression using the numeric entries of variables"""
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression must be a non-empty string")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Failed to evaluate expression {expression!r}: {e.msg}") from e

    evaluator = _Evaluator(expression, numeric_fields(variables))
    try:
        return evaluator.visit(tree)
    except ExpressionError:
        raise
    except (ArithmeticError, ValueError, TypeError) as e:
        raise evaluator.fail(str(e)) from e
