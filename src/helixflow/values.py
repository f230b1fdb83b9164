# values.py
"""
Typed, optional-aware values flowing between tasks.

Runtime representation of the tagged union:

    File                -> File(path)
    String/Int/Float    -> str / int / float
    Boolean             -> bool
    Array[T]            -> tuple
    Map[String, T]      -> Struct
    Struct[a: T, ...]   -> Struct
    Optional absence    -> ABSENT   (never None, "", 0 or ())

Values are immutable once produced.
"""
from __future__ import annotations

import hashlib
import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, replace
from functools import cached_property
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Tuple

from .errors import EvaluationError, TypeMismatch, UnresolvedDependency, ValidationError


PRIMITIVES = ("File", "String", "Int", "Float", "Boolean")


# ---------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Type:
    kind: str
    optional: bool = False
    item: Optional["Type"] = None                    # Array item / Map value
    members: Tuple[Tuple[str, "Type"], ...] = ()     # Struct members

    def __str__(self) -> str:
        if self.kind == "Array":
            text = f"Array[{self.item}]"
        elif self.kind == "Map":
            text = f"Map[String, {self.item}]"
        elif self.kind == "Struct":
            inner = ", ".join(f"{n}: {t}" for n, t in self.members)
            text = f"Struct[{inner}]"
        else:
            text = self.kind
        return text + ("?" if self.optional else "")

    def required(self) -> "Type":
        return replace(self, optional=False)


_TYPE_TOKEN = re.compile(r"\s*(?:([A-Za-z_][A-Za-z0-9_]*)|([\[\],:?]))")


class _TypeParser:
    def __init__(self, text: str):
        self.text = text
        self.tokens: list[str] = []
        pos = 0
        stripped = text.rstrip()
        while pos < len(stripped):
            m = _TYPE_TOKEN.match(stripped, pos)
            if not m:
                raise ValidationError(f"Invalid type {text!r}")
            self.tokens.append(m.group(1) or m.group(2))
            pos = m.end()
        self.pos = 0

    def _peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> str:
        tok = self._peek()
        if tok is None:
            raise ValidationError(f"Invalid type {self.text!r}: unexpected end")
        self.pos += 1
        return tok

    def _expect(self, tok: str) -> None:
        got = self._take()
        if got != tok:
            raise ValidationError(f"Invalid type {self.text!r}: expected {tok!r}, got {got!r}")

    def parse(self) -> Type:
        name = self._take()
        if name in PRIMITIVES:
            t = Type(name)
        elif name == "Array":
            self._expect("[")
            t = Type("Array", item=self.parse())
            self._expect("]")
        elif name == "Map":
            self._expect("[")
            key = self.parse()
            if key != Type("String"):
                raise ValidationError(f"Invalid type {self.text!r}: Map keys must be String")
            self._expect(",")
            t = Type("Map", item=self.parse())
            self._expect("]")
        elif name == "Struct":
            self._expect("[")
            members: list[tuple[str, Type]] = []
            while True:
                member = self._take()
                self._expect(":")
                members.append((member, self.parse()))
                if self._peek() == ",":
                    self.pos += 1
                    continue
                break
            self._expect("]")
            names = [n for n, _ in members]
            if len(set(names)) != len(names):
                raise ValidationError(f"Invalid type {self.text!r}: duplicate struct member")
            t = Type("Struct", members=tuple(members))
        else:
            raise ValidationError(f"Invalid type {self.text!r}: unknown type {name!r}")

        if self._peek() == "?":
            self.pos += 1
            t = replace(t, optional=True)
        return t

    def parse_all(self) -> Type:
        t = self.parse()
        if self._peek() is not None:
            raise ValidationError(f"Invalid type {self.text!r}: trailing {self._peek()!r}")
        return t


def parse_type(text: str | Type) -> Type:
    """Parse 'Array[File]?' style type strings."""
    if isinstance(text, Type):
        return text
    return _TypeParser(text).parse_all()


# ---------------------------------------------------------------------
# Value representations
# ---------------------------------------------------------------------

class _Absent:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = _Absent()


@dataclass(frozen=True)
class File:
    """Reference to an artifact. The fingerprint is computed on first use."""
    path: str

    def __str__(self) -> str:
        return self.path

    @cached_property
    def fingerprint(self) -> str:
        st = os.stat(self.path)
        token = f"{os.path.abspath(self.path)}:{st.st_size}:{st.st_mtime_ns}"
        return hashlib.sha256(token.encode("utf-8")).hexdigest()


class Struct(Mapping):
    """Immutable name -> Value mapping (Map and Struct values)."""
    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | Iterable[tuple[str, Any]] = ()):
        self._data = dict(data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Struct({self._data!r})"


def value_kind(value: Any) -> str:
    if value is ABSENT:
        return "absent"
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, int):
        return "Int"
    if isinstance(value, float):
        return "Float"
    if isinstance(value, str):
        return "String"
    if isinstance(value, File):
        return "File"
    if isinstance(value, (tuple, list)):
        return "Array"
    if isinstance(value, Mapping):
        return "Struct"
    return type(value).__name__


# ---------------------------------------------------------------------
# Coercion / binding
# ---------------------------------------------------------------------

def coerce(type_: Type, value: Any, base_dir: str | Path | None = None) -> Any:
    """
    Turn raw Python/JSON data (or an existing Value) into a Value of type_.

    Raises TypeMismatch when the tag does not match after Optional-unwrapping.
    """
    if value is None or value is ABSENT:
        if type_.optional:
            return ABSENT
        raise TypeMismatch(f"expected {type_}, got an absent value")

    kind = type_.kind
    if kind == "File":
        if isinstance(value, File):
            return value
        if isinstance(value, (str, os.PathLike)):
            p = Path(value)
            if base_dir is not None and not p.is_absolute():
                p = Path(base_dir) / p
            return File(str(p))
    elif kind == "String":
        if isinstance(value, str):
            return value
        if isinstance(value, File):
            return value.path
    elif kind == "Int":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif kind == "Float":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    elif kind == "Boolean":
        if isinstance(value, bool):
            return value
    elif kind == "Array":
        if isinstance(value, (list, tuple)):
            return tuple(coerce(type_.item, v, base_dir) for v in value)
    elif kind == "Map":
        if isinstance(value, Mapping) and all(isinstance(k, str) for k in value):
            return Struct((k, coerce(type_.item, v, base_dir)) for k, v in value.items())
    elif kind == "Struct":
        if isinstance(value, Mapping):
            declared = dict(type_.members)
            extra = sorted(set(value) - set(declared))
            if extra:
                raise TypeMismatch(f"expected {type_}, got unknown member(s) {extra}")
            return Struct(
                (name, coerce(t, value.get(name, ABSENT), base_dir))
                for name, t in type_.members
            )

    raise TypeMismatch(f"expected {type_}, got {value_kind(value)} {value!r}")


def bind(param, value: Any, base_dir: str | Path | None = None) -> Any:
    """Bind a value to a declared parameter (anything with .name and .type)."""
    try:
        return coerce(param.type, value, base_dir)
    except TypeMismatch as e:
        raise TypeMismatch(f"input '{param.name}': {e}") from None


def resolve_default(param, env: Mapping[str, Any]) -> Any:
    """
    Evaluate param.default against the already-bound sibling values in env.
    Raises UnresolvedDependency if the expression refers to an unbound parameter.
    """
    def lookup(name: str) -> Any:
        if name not in env:
            raise UnresolvedDependency(
                f"default for '{param.name}' refers to unbound parameter '{name}'"
            )
        return env[name]

    return bind(param, param.default.evaluate(lookup))


# ---------------------------------------------------------------------
# Optional folding
# ---------------------------------------------------------------------

def select_first(values: Iterable[Any]) -> Any:
    """First-present-wins."""
    for v in values:
        if v is not ABSENT:
            return v
    raise EvaluationError("select_first: no defined value")


def select_all(values: Iterable[Any]) -> tuple:
    """Filter-absent-and-collect, preserving order."""
    return tuple(v for v in values if v is not ABSENT)


def defined(value: Any) -> bool:
    return value is not ABSENT


# ---------------------------------------------------------------------
# Serialization / sizes
# ---------------------------------------------------------------------

def to_json(value: Any) -> Any:
    """Plain JSON form: File -> path, ABSENT -> null."""
    if value is ABSENT:
        return None
    if isinstance(value, File):
        return value.path
    if isinstance(value, (tuple, list)):
        return [to_json(v) for v in value]
    if isinstance(value, Mapping):
        return {k: to_json(v) for k, v in value.items()}
    return value


def dumps_stable(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


SIZE_UNITS = {
    "B": 1,
    "KB": 1000, "MB": 1000 ** 2, "GB": 1000 ** 3, "TB": 1000 ** 4,
    "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4,
    "KIB": 1024, "MIB": 1024 ** 2, "GIB": 1024 ** 3, "TIB": 1024 ** 4,
}

_SIZE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*([A-Za-z]*)\s*$")


def parse_size(text: str | int | float) -> int:
    """'4 GB' -> 4000000000, '512MiB' -> 536870912, 100 -> 100."""
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return int(text)
    m = _SIZE.match(str(text))
    if not m:
        raise ValidationError(f"Invalid size {text!r}")
    amount, unit = m.groups()
    factor = SIZE_UNITS.get((unit or "B").upper())
    if factor is None:
        raise ValidationError(f"Invalid size unit in {text!r}")
    return int(float(amount) * factor)
