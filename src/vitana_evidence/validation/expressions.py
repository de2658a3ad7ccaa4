"""
Condition Expression Interpreter

VTID: VTID-01204

A small sandboxed evaluator for validation conditions. Expressions are parsed
with `ast` and walked against a whitelist; nothing reaches Python's own
`eval`, no dunder attribute is reachable, and only the predicate functions in
FUNCTIONS can be called.

Conditions written for the JavaScript-era documents keep working:
`===`, `!==`, `&&`, `||`, `!`, `true`, `false`, `null` and `.length` are
normalised before parsing, and `STEP.1` becomes `STEP[1]`.
"""

import ast
import operator
import re
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from ..errors import ValidationError


class ExpressionError(ValidationError):
    """Expression could not be parsed or evaluated"""
    pass


# =========================================================================
# Normalisation
# =========================================================================

_STRING_LITERAL = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")

_REWRITES = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
    # STEP.1 -> STEP[1]
    (re.compile(r"\b([A-Za-z_]\w*)\.(\d+)\b"), r"\1[\2]"),
]


def normalize(expression: str) -> str:
    """Rewrite JavaScript-style operators outside string literals"""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        segment = parts[i]
        for pattern, replacement in _REWRITES:
            segment = pattern.sub(replacement, segment)
        parts[i] = segment
    return "".join(parts).strip()


# =========================================================================
# Predicate Functions
# =========================================================================

def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    return item in container


def _matches(text: Any, pattern: str) -> bool:
    if text is None:
        return False
    return re.search(pattern, str(text), re.MULTILINE) is not None


def _startswith(text: Any, prefix: str) -> bool:
    return text is not None and str(text).startswith(prefix)


def _endswith(text: Any, suffix: str) -> bool:
    return text is not None and str(text).endswith(suffix)


def _exists(path: Any) -> bool:
    return path is not None and Path(str(path)).exists()


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "any": any,
    "all": all,
    "contains": _contains,
    "matches": _matches,
    "startswith": _startswith,
    "endswith": _endswith,
    "exists": _exists,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
    "int": int,
    "float": float,
    "str": str,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}


# =========================================================================
# Evaluator
# =========================================================================

class _Evaluator:
    def __init__(self, context: Mapping[str, Any]):
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.context:
            return self.context[node.id]
        raise ExpressionError(f"Unknown name '{node.id}'")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to '{node.attr}' is not allowed")
        value = self.visit(node.value)
        if isinstance(value, Mapping) and node.attr in value:
            return value[node.attr]
        if node.attr == "length" and isinstance(value, (str, list, tuple, Mapping)):
            return len(value)
        raise ExpressionError(f"No field '{node.attr}' on {type(value).__name__}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            if isinstance(value, Mapping):
                if key not in value and str(key) in value:
                    key = str(key)
                return value[key]
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Cannot index {type(value).__name__} with {key!r}: {e}")

    def visit_Slice(self, node: ast.Slice) -> slice:
        lower = self.visit(node.lower) if node.lower else None
        upper = self.visit(node.upper) if node.upper else None
        step = self.visit(node.step) if node.step else None
        return slice(lower, upper, step)

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(f"Cannot compare {left!r} and {right!r}: {e}")
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        value = None
        if isinstance(node.op, ast.And):
            for operand in node.values:
                value = self.visit(operand)
                if not value:
                    return value
            return value
        for operand in node.values:
            value = self.visit(operand)
            if value:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        try:
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
        except TypeError as e:
            raise ExpressionError(str(e))
        raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        func = _BINARY_OPS.get(type(node.op))
        if func is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            return func(left, right)
        except (TypeError, ValueError, ZeroDivisionError, OverflowError, MemoryError) as e:
            raise ExpressionError(f"{type(e).__name__}: {e}")

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            name = node.func.id if isinstance(node.func, ast.Name) else type(node.func).__name__
            raise ExpressionError(f"Function '{name}' is not allowed")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        args = [self.visit(a) for a in node.args]
        try:
            return FUNCTIONS[node.func.id](*args)
        except (TypeError, ValueError, OverflowError, MemoryError, re.error) as e:
            raise ExpressionError(f"{node.func.id}(): {e}")


def compile_expression(expression: str) -> ast.expr:
    """Normalise and parse an expression, raising ExpressionError on bad syntax"""
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Empty expression")
    source = normalize(expression)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e.msg}")
    except (RecursionError, MemoryError):
        raise ExpressionError(f"Expression is nested too deeply: '{expression[:80]}'")
    return tree.body


def evaluate(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate an expression against a read-only context"""
    tree = compile_expression(expression)
    try:
        return _Evaluator(context).visit(tree)
    except RecursionError:
        raise ExpressionError(f"Expression is nested too deeply: '{expression[:80]}'")
