# expr.py
"""
Expressions and templates.

Expressions are a restricted subset of Python expression syntax, parsed with
`ast` and evaluated by a small interpreter (never `eval`):

    bam                                   name
    align.bam                             call output (maps over arrays)
    select_first([a.counts, b.counts])    whitelisted function
    f"{prefix}.sorted.bam"                f-string
    ceil(size(bam, "GB") * 2) + 4         arithmetic

Templates embed expressions as ~{expr}:

    "samtools index ~{bam} ~{prefix}.bai"
"""
from __future__ import annotations

import ast
import json
import math
import os
import re
from collections.abc import Mapping
from typing import Any, Callable, Iterable, List, NamedTuple, Optional, Union

from .errors import EvaluationError, HelixflowError, UnresolvedDependency, ValidationError
from .values import (
    ABSENT,
    SIZE_UNITS,
    File,
    Struct,
    defined,
    select_all,
    select_first,
    to_json,
    value_kind,
)

Lookup = Callable[[str], Any]

# References inside these calls tolerate a failed/absent upstream value.
TOLERANT_FUNCTIONS = frozenset({"select_first", "select_all", "defined"})


class Reference(NamedTuple):
    name: str
    member: Optional[str]
    tolerant: bool


# ---------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------

def _require(value: Any) -> Any:
    if value is ABSENT:
        raise EvaluationError("absent value used where a value is required")
    return value


def _number(value: Any) -> int | float:
    value = _require(value)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EvaluationError(f"expected a number, got {value_kind(value)}")
    return value


def _truth(value: Any) -> bool:
    value = _require(value)
    if not isinstance(value, bool):
        raise EvaluationError(f"expected Boolean, got {value_kind(value)}")
    return value


def _array(value: Any) -> tuple:
    value = _require(value)
    if not isinstance(value, tuple):
        raise EvaluationError(f"expected Array, got {value_kind(value)}")
    return value


def text_of(value: Any) -> str:
    """String form used by f-strings, concatenation and raw templates."""
    value = _require(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, File):
        return value.path
    if isinstance(value, tuple):
        return " ".join(text_of(v) for v in value)
    if isinstance(value, Mapping):
        return json.dumps(to_json(value), sort_keys=True)
    return str(value)


def member(value: Any, name: str) -> Any:
    if value is ABSENT:
        return ABSENT
    if isinstance(value, Mapping):
        if name not in value:
            raise EvaluationError(f"no member {name!r} (have {sorted(value)})")
        return value[name]
    if isinstance(value, tuple):
        return tuple(member(v, name) for v in value)
    raise EvaluationError(f"cannot read member {name!r} of {value_kind(value)}")


def _index(value: Any, key: Any) -> Any:
    if value is ABSENT:
        return ABSENT
    try:
        if isinstance(value, tuple) and isinstance(key, int) and not isinstance(key, bool):
            return value[key]
        if isinstance(value, Mapping) and isinstance(key, str):
            return value[key]
    except (IndexError, KeyError):
        raise EvaluationError(f"index {key!r} out of range") from None
    raise EvaluationError(f"cannot index {value_kind(value)} with {value_kind(key)}")


def _iter_files(value: Any) -> Iterable[str]:
    if value is ABSENT:
        return
    if isinstance(value, File):
        yield value.path
    elif isinstance(value, str):
        yield value
    elif isinstance(value, tuple):
        for v in value:
            yield from _iter_files(v)
    elif isinstance(value, Mapping):
        for v in value.values():
            yield from _iter_files(v)


# ---------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------

def _basename(path: Any, suffix: str = "") -> str:
    name = os.path.basename(text_of(path))
    if suffix and name.endswith(suffix):
        name = name[: -len(suffix)]
    return name


def _size(value: Any, unit: str = "B") -> float:
    factor = SIZE_UNITS.get(str(unit).upper())
    if factor is None:
        raise EvaluationError(f"size(): unknown unit {unit!r}")
    total = 0
    for path in _iter_files(value):
        try:
            total += os.path.getsize(path)
        except OSError as e:
            raise EvaluationError(f"size(): cannot stat {path}: {e}") from None
    return total / factor


def _length(value: Any) -> int:
    value = _require(value)
    if isinstance(value, (tuple, Mapping, str)):
        return len(value)
    raise EvaluationError(f"length(): unsupported {value_kind(value)}")


def _extreme(fn, args: tuple) -> int | float:
    values = args[0] if len(args) == 1 else args
    return fn(_number(v) for v in _array(tuple(values)))


def _to_int(value: Any) -> int:
    value = _require(value)
    if isinstance(value, str):
        return int(value.strip())
    return int(_number(value))


def _to_float(value: Any) -> float:
    value = _require(value)
    if isinstance(value, str):
        return float(value.strip())
    return float(_number(value))


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "select_first": lambda values: select_first(_array(values)),
    "select_all": lambda values: () if values is ABSENT else select_all(_array(values)),
    "defined": defined,
    "basename": _basename,
    "length": _length,
    "size": _size,
    "ceil": lambda x: math.ceil(_number(x)),
    "floor": lambda x: math.floor(_number(x)),
    "round": lambda x: math.floor(_number(x) + 0.5),
    "min": lambda *args: _extreme(min, args),
    "max": lambda *args: _extreme(max, args),
    "sub": lambda text, pattern, repl: re.sub(pattern, repl, text_of(text)),
    "join": lambda sep, values: text_of(sep).join(text_of(v) for v in _array(values)),
    "flatten": lambda arrays: tuple(v for a in _array(arrays) for v in _array(a)),
    "range": lambda n: tuple(range(_number(n))),
    "str": text_of,
    "int": _to_int,
    "float": _to_float,
}


# ---------------------------------------------------------------------
# Parsing / static checks
# ---------------------------------------------------------------------

_ALLOWED_NODES = (
    ast.Expression, ast.Constant, ast.Name, ast.Load, ast.Attribute, ast.Subscript,
    ast.List, ast.Tuple, ast.Dict,
    ast.BoolOp, ast.And, ast.Or,
    ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod,
    ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn,
    ast.IfExp, ast.Call, ast.JoinedStr, ast.FormattedValue,
)


def _check(tree: ast.AST, source: str) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ValidationError(
                f"Unsupported syntax in expression {source!r}: {type(node).__name__}"
            )
        if isinstance(node, ast.Constant) and node.value is not None and not isinstance(
            node.value, (str, int, float, bool)
        ):
            raise ValidationError(f"Unsupported literal in expression {source!r}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ValidationError(f"Private attribute access in expression {source!r}")
        if isinstance(node, ast.Dict) and any(k is None for k in node.keys):
            raise ValidationError(f"Dict unpacking in expression {source!r}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                raise ValidationError(f"Unknown function in expression {source!r}")
            if node.keywords:
                raise ValidationError(f"Keyword arguments in expression {source!r}")


def _references(tree: ast.AST) -> List[Reference]:
    out: List[Reference] = []

    def walk(node: ast.AST, tolerant: bool) -> None:
        if isinstance(node, ast.Call):
            inner = tolerant or node.func.id in TOLERANT_FUNCTIONS
            for arg in node.args:
                walk(arg, inner)
            return
        if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
            out.append(Reference(node.value.id, node.attr, tolerant))
            return
        if isinstance(node, ast.Name):
            out.append(Reference(node.id, None, tolerant))
            return
        for child in ast.iter_child_nodes(node):
            walk(child, tolerant)

    walk(tree, False)
    return out


def _plain(value: Any) -> Any:
    if value is ABSENT:
        return None
    if isinstance(value, File):
        return value.path
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    return value


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return left == right
    if isinstance(op, ast.NotEq):
        return left != right
    if isinstance(op, (ast.In, ast.NotIn)):
        right = _require(right)
        if not isinstance(right, (tuple, Mapping, str)):
            raise EvaluationError(f"'in' needs an Array, Map or String, got {value_kind(right)}")
        found = left in right
        return found if isinstance(op, ast.In) else not found
    left, right = _require(left), _require(right)
    try:
        if isinstance(op, ast.Lt):
            return left < right
        if isinstance(op, ast.LtE):
            return left <= right
        if isinstance(op, ast.Gt):
            return left > right
        return left >= right
    except TypeError:
        raise EvaluationError(
            f"cannot order {value_kind(left)} and {value_kind(right)}"
        ) from None


def _binop(op: ast.operator, left: Any, right: Any) -> Any:
    left, right = _require(left), _require(right)
    if isinstance(op, ast.Add):
        if isinstance(left, tuple) and isinstance(right, tuple):
            return left + right
        if isinstance(left, (str, File)) or isinstance(right, (str, File)):
            return text_of(left) + text_of(right)
        return _number(left) + _number(right)
    a, b = _number(left), _number(right)
    try:
        if isinstance(op, ast.Sub):
            return a - b
        if isinstance(op, ast.Mult):
            return a * b
        if isinstance(op, ast.Div):
            return a / b
        if isinstance(op, ast.FloorDiv):
            return a // b
        return a % b
    except ZeroDivisionError:
        raise EvaluationError("division by zero") from None


def _eval(node: ast.AST, lookup: Lookup) -> Any:
    if isinstance(node, ast.Constant):
        return ABSENT if node.value is None else node.value
    if isinstance(node, ast.Name):
        try:
            return lookup(node.id)
        except KeyError:
            raise UnresolvedDependency(f"'{node.id}' is not bound") from None
    if isinstance(node, ast.Attribute):
        return member(_eval(node.value, lookup), node.attr)
    if isinstance(node, ast.Subscript):
        return _index(_eval(node.value, lookup), _eval(node.slice, lookup))
    if isinstance(node, (ast.List, ast.Tuple)):
        return tuple(_eval(e, lookup) for e in node.elts)
    if isinstance(node, ast.Dict):
        items = []
        for k, v in zip(node.keys, node.values):
            key = _require(_eval(k, lookup))
            if not isinstance(key, str):
                raise EvaluationError(f"map keys must be String, got {value_kind(key)}")
            items.append((key, _eval(v, lookup)))
        return Struct(items)
    if isinstance(node, ast.BoolOp):
        want = isinstance(node.op, ast.Or)
        for v in node.values:
            if _truth(_eval(v, lookup)) is want:
                return want
        return not want
    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, lookup)
        if isinstance(node.op, ast.Not):
            return not _truth(operand)
        return -_number(operand) if isinstance(node.op, ast.USub) else +_number(operand)
    if isinstance(node, ast.BinOp):
        return _binop(node.op, _eval(node.left, lookup), _eval(node.right, lookup))
    if isinstance(node, ast.Compare):
        left = _eval(node.left, lookup)
        for op, comp in zip(node.ops, node.comparators):
            right = _eval(comp, lookup)
            if not _compare(op, left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.IfExp):
        if _truth(_eval(node.test, lookup)):
            return _eval(node.body, lookup)
        return _eval(node.orelse, lookup)
    if isinstance(node, ast.Call):
        name = node.func.id
        args = [_eval(a, lookup) for a in node.args]
        try:
            return FUNCTIONS[name](*args)
        except HelixflowError:
            raise
        except (TypeError, ValueError, re.error) as e:
            raise EvaluationError(f"{name}(): {e}") from None
    if isinstance(node, ast.JoinedStr):
        return "".join(
            _eval(v, lookup) if isinstance(v, ast.FormattedValue) else v.value
            for v in node.values
        )
    if isinstance(node, ast.FormattedValue):
        value = _eval(node.value, lookup)
        if node.format_spec is not None:
            spec = _eval(node.format_spec, lookup)
            try:
                return format(_require(value), spec)
            except (TypeError, ValueError) as e:
                raise EvaluationError(f"bad format spec {spec!r}: {e}") from None
        return text_of(value)
    raise EvaluationError(f"unsupported node {type(node).__name__}")


class Expr:
    """A compiled expression. Construction validates syntax and the function whitelist."""

    def __init__(self, source: str):
        if not isinstance(source, str):
            raise ValidationError(f"Expression must be a string, got {source!r}")
        self.source = source
        try:
            tree = ast.parse(source.strip(), mode="eval")
        except SyntaxError as e:
            raise ValidationError(f"Invalid expression {source!r}: {e.msg}") from None
        _check(tree, source)
        self._tree = tree.body
        self.references: tuple[Reference, ...] = tuple(_references(self._tree))

    @classmethod
    def literal(cls, value: Any) -> "Expr":
        return cls(repr(_plain(value)))

    @property
    def name(self) -> str | None:
        """Set when the expression is a bare name."""
        return self._tree.id if isinstance(self._tree, ast.Name) else None

    def evaluate(self, lookup: Lookup) -> Any:
        return _eval(self._tree, lookup)

    def __repr__(self) -> str:
        return f"Expr({self.source!r})"


def as_expr(value: Any) -> Expr:
    """DSL coercion: Expr stays, str is parsed, anything else is a literal."""
    if isinstance(value, Expr):
        return value
    if isinstance(value, str):
        return Expr(value)
    return Expr.literal(value)


# ---------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------

def _split_template(source: str) -> List[Union[str, Expr]]:
    parts: List[Union[str, Expr]] = []
    pos = 0
    while True:
        start = source.find("~{", pos)
        if start < 0:
            if pos < len(source):
                parts.append(source[pos:])
            return parts
        if start > pos:
            parts.append(source[pos:start])

        depth, quote, i = 1, None, start + 2
        while i < len(source):
            ch = source[i]
            if quote:
                if ch == "\\":
                    i += 1
                elif ch == quote:
                    quote = None
            elif ch in ("'", '"'):
                quote = ch
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    break
            i += 1
        else:
            raise ValidationError(f"Unterminated ~{{ in template {source!r}")

        inner = source[start + 2:i]
        if not inner.strip():
            raise ValidationError(f"Empty ~{{}} placeholder in template {source!r}")
        parts.append(Expr(inner))
        pos = i + 1


def _raw_format(value: Any, expr: Expr) -> str:
    return "" if value is ABSENT else text_of(value)


class Template:
    """A string with ~{expr} placeholders."""

    def __init__(self, source: str):
        if not isinstance(source, str):
            source = str(source)
        self.source = source
        self.parts = _split_template(source)

    @property
    def expressions(self) -> List[Expr]:
        return [p for p in self.parts if isinstance(p, Expr)]

    @property
    def references(self) -> List[Reference]:
        return [r for e in self.expressions for r in e.references]

    def render(
        self,
        lookup: Lookup,
        formatter: Callable[[Any, Expr], str] | None = None,
    ) -> str:
        formatter = formatter or _raw_format
        out = []
        for part in self.parts:
            if isinstance(part, Expr):
                out.append(formatter(part.evaluate(lookup), part))
            else:
                out.append(part)
        return "".join(out)

    def __repr__(self) -> str:
        return f"Template({self.source!r})"
