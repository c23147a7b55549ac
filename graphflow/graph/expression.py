"""
Expression Evaluator - side-effect-free reads over a state snapshot.

Expressions use a safe subset of Python syntax, checked against an AST
whitelist before evaluation:

    review.critical > 0
    state.review.high > 3 and not is_undefined(review.owner)
    verdict in ['approve', 'comment']
    findings[0].severity == 'high'

Missing keys evaluate to UNDEFINED. UNDEFINED is falsy and compares false in
every equality, inequality and ordering test; only is_undefined()/is_defined()
observe it directly. Comparing operands of incompatible types (a string against
a number, for example) raises EvalError instead of quietly returning False.
"""

import ast
import operator
from collections.abc import Mapping, Sequence
from functools import lru_cache
from typing import Any

from graphflow.errors import EvalError


class _Undefined:
    """Value of a path that does not exist in the snapshot."""

    _instance: "_Undefined | None" = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()

_CONSTANT_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "True": True,
    "False": False,
    "null": None,
    "none": None,
    "None": None,
    "undefined": UNDEFINED,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Call,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.Constant,
    ast.List,
    ast.Tuple,
)

_ARITHMETIC = {
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


def _len(value: Any) -> int:
    if isinstance(value, str | Mapping) or _is_sequence(value):
        return len(value)
    raise EvalError(f"len() of a {_category(value)} value")


FUNCTIONS: dict[str, Any] = {
    "is_undefined": lambda value: value is UNDEFINED,
    "is_defined": lambda value: value is not UNDEFINED,
    "len": _len,
}


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str | bytes)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _category(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "mapping"
    if _is_sequence(value):
        return "sequence"
    return type(value).__name__


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> ast.Expression:
    """
    Parse an expression and check it against the whitelist.

    Raises:
        EvalError: on a syntax error or a disallowed construct
    """
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise EvalError(f"Syntax error: {e.msg}", expression=expression) from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise EvalError(f"Disallowed syntax '{type(node).__name__}'", expression=expression)
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                allowed = ", ".join(f"{name}()" for name in FUNCTIONS)
                raise EvalError(f"Only {allowed} may be called", expression=expression)
            if node.keywords:
                raise EvalError("Keyword arguments are not supported", expression=expression)
        if isinstance(node, ast.Constant) and not isinstance(
            node.value, str | int | float | bool | type(None)
        ):
            raise EvalError(f"Unsupported literal {node.value!r}", expression=expression)
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise EvalError(f"Private field '{node.attr}' is not readable", expression=expression)
    return tree


class ExpressionEvaluator:
    """
    Evaluates compiled expressions against one read-only state snapshot.

    Example:
        evaluator = ExpressionEvaluator({"review": {"critical": 1}})
        evaluator.evaluate("review.critical > 0")  # True
    """

    def __init__(self, snapshot: Mapping[str, Any]):
        self._snapshot = snapshot
        self._expression = ""

    def evaluate(self, expression: str) -> Any:
        tree = compile_expression(expression)
        self._expression = expression
        return self._eval(tree.body)

    def evaluate_condition(self, expression: str) -> bool:
        value = self.evaluate(expression)
        if value is UNDEFINED:
            return False
        return bool(value)

    def _error(self, message: str) -> EvalError:
        return EvalError(message, expression=self._expression)

    def _eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self._lookup(node.id)

        if isinstance(node, ast.Attribute):
            return self._field(self._eval(node.value), node.attr)

        if isinstance(node, ast.Subscript):
            return self._index(self._eval(node.value), self._eval(node.slice))

        if isinstance(node, ast.List | ast.Tuple):
            return [self._eval(element) for element in node.elts]

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._truthy(value) for value in node.values)
            return any(self._truthy(value) for value in node.values)

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if not _is_number(operand):
                raise self._error(f"Unary minus/plus applied to a {_category(operand)} value")
            return -operand if isinstance(node.op, ast.USub) else +operand

        if isinstance(node, ast.BinOp):
            return self._arithmetic(node.op, self._eval(node.left), self._eval(node.right))

        if isinstance(node, ast.Compare):
            left = self._eval(node.left)
            for op, comparator in zip(node.ops, node.comparators, strict=True):
                right = self._eval(comparator)
                if not self._compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.Call):
            func = FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
            return func(*(self._eval(arg) for arg in node.args))

        raise self._error(f"Unsupported syntax '{type(node).__name__}'")

    def _truthy(self, node: ast.AST) -> bool:
        return bool(self._eval(node))

    def _lookup(self, name: str) -> Any:
        if name in self._snapshot:
            return self._snapshot[name]
        if name in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[name]
        if name == "state":
            return self._snapshot
        return UNDEFINED

    def _field(self, base: Any, name: str) -> Any:
        if base is UNDEFINED or base is None:
            return UNDEFINED
        if isinstance(base, Mapping):
            return base.get(name, UNDEFINED)
        raise self._error(f"Cannot read field '{name}' of a {_category(base)} value")

    def _index(self, base: Any, key: Any) -> Any:
        if base is UNDEFINED or base is None or key is UNDEFINED:
            return UNDEFINED
        if isinstance(base, Mapping):
            try:
                return base.get(key, UNDEFINED)
            except TypeError as e:
                raise self._error(f"Cannot use a {_category(key)} value as a mapping key") from e
        if _is_sequence(base):
            if not isinstance(key, int) or isinstance(key, bool):
                raise self._error(f"Sequence index must be an integer, got {_category(key)}")
            if -len(base) <= key < len(base):
                return base[key]
            return UNDEFINED
        raise self._error(f"Cannot index a {_category(base)} value")

    def _arithmetic(self, op: ast.operator, left: Any, right: Any) -> Any:
        if isinstance(op, ast.Add) and isinstance(left, str) and isinstance(right, str):
            return left + right
        if not (_is_number(left) and _is_number(right)):
            raise self._error(
                f"Arithmetic on {_category(left)} and {_category(right)} values"
            )
        try:
            return _ARITHMETIC[type(op)](left, right)
        except ZeroDivisionError as e:
            raise self._error("Division by zero") from e

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if left is UNDEFINED or right is UNDEFINED:
            return False

        if isinstance(op, ast.Eq | ast.NotEq):
            if left is not None and right is not None and _category(left) != _category(right):
                raise self._error(
                    f"Cannot compare {_category(left)} with {_category(right)}"
                )
            equal = left == right
            return equal if isinstance(op, ast.Eq) else not equal

        if isinstance(op, ast.In | ast.NotIn):
            contained = self._contains(right, left)
            return contained if isinstance(op, ast.In) else not contained

        both_numbers = _is_number(left) and _is_number(right)
        both_strings = isinstance(left, str) and isinstance(right, str)
        if not (both_numbers or both_strings):
            raise self._error(
                f"Cannot order {_category(left)} against {_category(right)}"
            )
        return _ORDERING[type(op)](left, right)

    def _contains(self, container: Any, item: Any) -> bool:
        if isinstance(container, str):
            if not isinstance(item, str):
                raise self._error(f"Cannot search a string for a {_category(item)} value")
            return item in container
        if isinstance(container, Mapping) or _is_sequence(container):
            try:
                return item in container
            except TypeError as e:
                raise self._error(
                    f"Cannot test a {_category(item)} value against a {_category(container)}"
                ) from e
        raise self._error(f"Membership test against a {_category(container)} value")


def evaluate(expression: str, snapshot: Mapping[str, Any]) -> Any:
    """Evaluate an expression against a snapshot. Raises EvalError."""
    return ExpressionEvaluator(snapshot).evaluate(expression)


def evaluate_condition(expression: str, snapshot: Mapping[str, Any]) -> bool:
    """Evaluate an expression as a routing condition. UNDEFINED counts as False."""
    return ExpressionEvaluator(snapshot).evaluate_condition(expression)
