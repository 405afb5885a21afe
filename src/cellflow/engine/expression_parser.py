# src/cellflow/engine/expression_parser.py
"""Safe expression parser for dispatch predicates written in documents.

Uses Python's ast module to parse and evaluate a restricted subset of
Python. This is NOT eval(): every node type is checked against a whitelist
when the expression is constructed, and evaluation walks the validated tree.

The only free name is ``data``, the accumulated data record. Supported:

- Field access: ``data['score']``, ``data['applicant']['age']``,
  ``data.get('note')``, ``data.get('note', '')``
- Comparisons (chained too), ``and``/``or``/``not``, ``in``/``not in``
- ``is``/``is not`` against None only
- str/int/float/bool/None literals and list/tuple/set/dict displays
- Arithmetic: + - * / // %, unary - and +
- Ternary: ``a if cond else b``

Everything else (calls other than ``data.get``, attributes, lambdas,
comprehensions, walrus, f-strings, starred, slices) is rejected.
"""

from __future__ import annotations

import ast
import operator
from typing import Any

from cellflow.contracts.errors import CellflowError


class ExpressionSecurityError(CellflowError):
    """Expression uses a construct outside the whitelist."""


class ExpressionSyntaxError(CellflowError):
    """Expression is not valid Python syntax."""


class ExpressionEvaluationError(CellflowError):
    """A valid expression failed against a concrete data record.

    Wraps KeyError, TypeError, ZeroDivisionError and the like; the original
    exception is chained via __cause__.
    """


_NAME = "data"
_CONSTANT_NAMES: dict[str, Any] = {"True": True, "False": False, "None": None}

_COMPARISON_OPS: dict[type[ast.cmpop], Any] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BINARY_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type[ast.unaryop], Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

# Node types that carry no risk on their own; their children are still checked
_PASSTHROUGH_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.Load,
    ast.IfExp,
    ast.List,
    ast.Tuple,
    ast.Set,
    ast.BoolOp,
    ast.And,
    ast.Or,
)

_FORBIDDEN_DESCRIPTIONS: dict[type[ast.AST], str] = {
    ast.Lambda: "Lambda expressions",
    ast.ListComp: "List comprehensions",
    ast.DictComp: "Dict comprehensions",
    ast.SetComp: "Set comprehensions",
    ast.GeneratorExp: "Generator expressions",
    ast.Await: "Await expressions",
    ast.Yield: "Yield expressions",
    ast.YieldFrom: "Yield from expressions",
    ast.NamedExpr: "Assignment expressions (:=)",
    ast.JoinedStr: "F-strings",
    ast.FormattedValue: "F-string expressions",
    ast.Starred: "Starred expressions (*)",
    ast.Slice: "Slice syntax (e.g., [1:3])",
}


def _is_get_call(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Attribute)
        and isinstance(node.func.value, ast.Name)
        and node.func.value.id == _NAME
        and node.func.attr == "get"
    )


def _is_data_derived(node: ast.AST) -> bool:
    """True for ``data``, ``data[...]...`` and ``data.get(...)[...]`` chains."""
    if isinstance(node, ast.Name):
        return node.id == _NAME
    if isinstance(node, ast.Subscript):
        return _is_data_derived(node.value)
    return _is_get_call(node)


def _is_none(node: ast.AST) -> bool:
    if isinstance(node, ast.Constant):
        return node.value is None
    return isinstance(node, ast.Name) and node.id == "None"


def _collect_violations(tree: ast.AST) -> list[str]:
    """Walk the tree and describe every construct outside the whitelist."""
    errors: list[str] = []

    def check(node: ast.AST) -> None:
        node_type = type(node)

        if node_type in _FORBIDDEN_DESCRIPTIONS:
            errors.append(f"{_FORBIDDEN_DESCRIPTIONS[node_type]} are forbidden")
            return

        if isinstance(node, ast.Name):
            if node.id != _NAME and node.id not in _CONSTANT_NAMES:
                errors.append(f"Forbidden name: {node.id!r}")
            return

        if isinstance(node, ast.Constant):
            if node.value is not None and not isinstance(node.value, str | int | float | bool):
                errors.append(f"Forbidden constant type: {type(node.value).__name__}")
            return

        if isinstance(node, ast.Call):
            if not _is_get_call(node):
                errors.append(f"Forbidden function call: {ast.unparse(node.func)}")
                return
            if not 1 <= len(node.args) <= 2:
                errors.append(f"data.get() requires 1 or 2 arguments, got {len(node.args)}")
            if node.keywords:
                errors.append("data.get() does not accept keyword arguments")
            for arg in node.args:
                check(arg)
            return

        if isinstance(node, ast.Attribute):
            if isinstance(node.value, ast.Name) and node.value.id == _NAME and node.attr == "get":
                errors.append("Bare 'data.get' is forbidden; use 'data.get(key)' or 'data.get(key, default)'")
            else:
                errors.append(f"Forbidden attribute access: {node.attr!r}")
            return

        if isinstance(node, ast.Subscript):
            if not _is_data_derived(node.value):
                errors.append(f"Subscript access is only allowed on data; got {ast.unparse(node.value)!r}")
        elif isinstance(node, ast.Compare):
            operands = [node.left, *node.comparators]
            for i, op in enumerate(node.ops):
                if type(op) not in _COMPARISON_OPS:
                    errors.append(f"Forbidden comparison operator: {type(op).__name__}")
                elif isinstance(op, ast.Is | ast.IsNot) and not (_is_none(operands[i]) or _is_none(operands[i + 1])):
                    errors.append("'is' and 'is not' are only allowed for None checks")
        elif isinstance(node, ast.BinOp):
            if type(node.op) not in _BINARY_OPS:
                errors.append(f"Forbidden binary operator: {type(node.op).__name__}")
        elif isinstance(node, ast.UnaryOp):
            if type(node.op) not in _UNARY_OPS:
                errors.append(f"Forbidden unary operator: {type(node.op).__name__}")
        elif isinstance(node, ast.Dict):
            if any(key is None for key in node.keys):
                errors.append("Dict spread (**) is forbidden")
        elif not isinstance(node, _PASSTHROUGH_NODES) and not isinstance(
            node, ast.cmpop | ast.operator | ast.unaryop
        ):
            errors.append(f"Forbidden construct: {node_type.__name__}")
            return

        for child in ast.iter_child_nodes(node):
            check(child)

    check(tree)
    return errors


class _Evaluator:
    """Evaluates a validated tree against one data record."""

    def __init__(self, data: dict[str, Any]) -> None:
        self._data = data

    def eval(self, node: ast.AST) -> Any:
        match node:
            case ast.Expression(body=body):
                return self.eval(body)
            case ast.Name(id=name):
                if name == _NAME:
                    return self._data
                return _CONSTANT_NAMES[name]
            case ast.Constant(value=value):
                return value
            case ast.Subscript():
                return self._subscript(node)
            case ast.Call():
                return self._get(node)
            case ast.Compare():
                return self._compare(node)
            case ast.BoolOp(op=ast.And(), values=values):
                result: Any = True
                for value in values:
                    result = self.eval(value)
                    if not result:
                        return result
                return result
            case ast.BoolOp(op=ast.Or(), values=values):
                result = False
                for value in values:
                    result = self.eval(value)
                    if result:
                        return result
                return result
            case ast.BinOp():
                return self._binop(node)
            case ast.UnaryOp(op=op, operand=operand):
                value = self.eval(operand)
                try:
                    return _UNARY_OPS[type(op)](value)
                except TypeError as e:
                    raise ExpressionEvaluationError(
                        f"type error in unary {type(op).__name__}: cannot apply to {type(value).__name__}"
                    ) from e
            case ast.IfExp(test=test, body=body, orelse=orelse):
                return self.eval(body) if self.eval(test) else self.eval(orelse)
            case ast.List(elts=elts):
                return [self.eval(e) for e in elts]
            case ast.Tuple(elts=elts):
                return tuple(self.eval(e) for e in elts)
            case ast.Set(elts=elts):
                try:
                    return {self.eval(e) for e in elts}
                except TypeError as e:
                    raise ExpressionEvaluationError(f"cannot create set literal: {e}") from e
            case ast.Dict(keys=keys, values=values):
                try:
                    return {self.eval(k): self.eval(v) for k, v in zip(keys, values, strict=True) if k is not None}
                except TypeError as e:
                    raise ExpressionEvaluationError(f"cannot create dict literal: {e}") from e
        raise ExpressionSecurityError(f"Unexpected node during evaluation: {type(node).__name__}")

    def _subscript(self, node: ast.Subscript) -> Any:
        container = self.eval(node.value)
        key = self.eval(node.slice)
        try:
            return container[key]
        except KeyError as e:
            if isinstance(container, dict):
                raise ExpressionEvaluationError(f"Field {key!r} not found. Available fields: {sorted(map(str, container))}") from e
            raise ExpressionEvaluationError(f"Key {key!r} not found in {type(container).__name__}") from e
        except IndexError as e:
            raise ExpressionEvaluationError(f"Index {key} out of range for {type(container).__name__} of length {len(container)}") from e
        except TypeError as e:
            raise ExpressionEvaluationError(f"Cannot access {key!r} on {type(container).__name__}: {e}") from e

    def _get(self, node: ast.Call) -> Any:
        args = [self.eval(arg) for arg in node.args]
        try:
            return self._data.get(*args)
        except TypeError as e:
            raise ExpressionEvaluationError(f"invalid argument to data.get(): {e}") from e

    def _compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.eval(comparator)
            try:
                if not _COMPARISON_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionEvaluationError(
                    f"type error in comparison ({type(op).__name__}): cannot compare {type(left).__name__} and {type(right).__name__}"
                ) from e
            left = right
        return True

    def _binop(self, node: ast.BinOp) -> Any:
        left = self.eval(node.left)
        right = self.eval(node.right)
        op_name = type(node.op).__name__
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except ZeroDivisionError as e:
            raise ExpressionEvaluationError(f"division by zero in {op_name} operation") from e
        except TypeError as e:
            raise ExpressionEvaluationError(
                f"type error in {op_name}: cannot apply to {type(left).__name__} and {type(right).__name__}"
            ) from e


class ExpressionParser:
    """A parsed, validated predicate expression.

    Validation happens once at construction; ``evaluate`` may be called
    any number of times, from any thread.

    Example:
        parser = ExpressionParser("data['score'] >= 750 and data['amount'] <= 50000")
        parser.evaluate({"score": 850, "amount": 20000})  # True
    """

    def __init__(self, expression: str) -> None:
        """Parse and validate ``expression``.

        Raises:
            ExpressionSyntaxError: Not valid Python syntax
            ExpressionSecurityError: Contains forbidden constructs
        """
        self._expression = expression
        try:
            self._tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise ExpressionSyntaxError(f"Invalid syntax: {e.msg}") from e

        errors = _collect_violations(self._tree)
        if errors:
            raise ExpressionSecurityError("; ".join(errors))

    @property
    def expression(self) -> str:
        return self._expression

    def referenced_fields(self) -> frozenset[str]:
        """Top-level data keys read with a literal key, e.g. ``data['score']``."""
        fields: set[str] = set()
        for node in ast.walk(self._tree):
            if isinstance(node, ast.Subscript) and isinstance(node.value, ast.Name) and node.value.id == _NAME:
                if isinstance(node.slice, ast.Constant) and isinstance(node.slice.value, str):
                    fields.add(node.slice.value)
            elif _is_get_call(node):
                first = node.args[0] if node.args else None  # type: ignore[attr-defined]
                if isinstance(first, ast.Constant) and isinstance(first.value, str):
                    fields.add(first.value)
        return frozenset(fields)

    def evaluate(self, data: dict[str, Any]) -> Any:
        """Evaluate against ``data``.

        Raises:
            ExpressionEvaluationError: Missing field, type mismatch, etc.
        """
        return _Evaluator(data).eval(self._tree)

    def __call__(self, data: dict[str, Any]) -> Any:
        return self.evaluate(data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExpressionParser):
            return NotImplemented
        return self._expression == other._expression

    def __hash__(self) -> int:
        return hash(self._expression)

    def __repr__(self) -> str:
        return f"ExpressionParser({self._expression!r})"
