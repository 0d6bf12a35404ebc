"""Runtime values, type descriptors and the coercion rules between them.

Every expression evaluates to a :class:`Value`.  Variables are declared with a
:class:`TypeDescriptor`; storing a value into a variable always goes through
:func:`coerce`, which converts the evaluation result into the storage
representation of the declared type (a float for numeric types, a str for
character types, a list of element values for tables).
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from decimal import MAX_PREC, ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from lexer import ABAPError


NUMBER = "NUMBER"
STRING = "STRING"
BOOLEAN = "BOOLEAN"

KIND_NUMERIC = "numeric"
KIND_CHARACTER = "character"

TYPE_TABLE = "table"

# Element types an internal table may hold.
TABLE_ELEMENT_TYPES = ("i", "string")

_NUMERIC_TEXT = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)$")
_DIGITS_ONLY = re.compile(r"^\d*$")
_DATE = re.compile(r"^\d{8}$")


class ABAPTypeError(ABAPError):
    """Raised when a declaration or a coercion is invalid."""


@dataclass(frozen=True)
class Value:
    type: str
    value: Any


def number(value: Any) -> Value:
    return Value(NUMBER, np.float64(value))


def string(value: str) -> Value:
    return Value(STRING, value)


def boolean(value: bool) -> Value:
    return Value(BOOLEAN, bool(value))


def format_number(value: Any) -> str:
    x = float(value)
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "Infinity" if x > 0 else "-Infinity"
    if x.is_integer() and abs(x) < 1e21:
        return str(int(x))
    return repr(x)


def to_text(value: Value) -> str:
    """Render a value the way WRITE and string assignment see it."""
    if value.type == BOOLEAN:
        return "TRUE" if value.value else "FALSE"
    if value.type == NUMBER:
        return format_number(value.value)
    return str(value.value)


def truthy(value: Value) -> bool:
    if value.type == NUMBER:
        return float(value.value) != 0.0
    if value.type == BOOLEAN:
        return bool(value.value)
    return value.value != ""


@dataclass(frozen=True)
class TypeDescriptor:
    name: str
    length: Optional[int] = None
    decimals: Optional[int] = None
    element: Optional["TypeDescriptor"] = None

    @property
    def is_table(self) -> bool:
        return self.name == TYPE_TABLE

    @property
    def kind(self) -> str:
        if self.is_table:
            assert self.element is not None
            return self.element.kind
        return BUILTIN_TYPES.get(self.name).kind

    def describe(self) -> str:
        if self.is_table:
            assert self.element is not None
            return f"TABLE OF {self.element.describe()}"
        return self.name.upper()


# ---- Type specs ----

TypeCoerce = Callable[[TypeDescriptor, Value, str], Any]
TypeDefault = Callable[[TypeDescriptor], Any]


@dataclass(frozen=True)
class TypeSpec:
    name: str
    kind: str
    coerce: TypeCoerce
    default_value: TypeDefault
    allows_length: bool = False
    allows_decimals: bool = False


@dataclass
class TypeRegistry:
    _types: Dict[str, TypeSpec] = field(default_factory=dict)

    def register(self, spec: TypeSpec) -> None:
        name = spec.name
        if not name or not isinstance(name, str):
            raise ABAPTypeError("Type name must be a non-empty string")
        if name in self._types:
            raise ABAPTypeError(f"Type '{name}' is already defined")
        self._types[name] = spec

    def has(self, name: str) -> bool:
        return name in self._types

    def get(self, name: str) -> TypeSpec:
        try:
            return self._types[name]
        except KeyError:
            raise ABAPTypeError(f'Type "{name}" is not supported')

    def names(self) -> set[str]:
        return set(self._types.keys())


def _numeric_source(value: Value, label: str) -> float:
    if value.type == NUMBER:
        x = float(value.value)
    elif value.type == STRING:
        text = str(value.value).strip()
        if text == "":
            return 0.0
        if not _NUMERIC_TEXT.match(text):
            raise ABAPTypeError(f"Value assigned to {label} must be numeric")
        x = float(text)
    else:
        raise ABAPTypeError(f"Value assigned to {label} must be numeric")
    if not math.isfinite(x):
        raise ABAPTypeError(f"Value assigned to {label} must be a finite number")
    return x


def _coerce_i(_: TypeDescriptor, value: Value, label: str) -> Any:
    return np.float64(math.trunc(_numeric_source(value, label)))


def _coerce_f(_: TypeDescriptor, value: Value, label: str) -> Any:
    return np.float64(_numeric_source(value, label))


def _coerce_p(descriptor: TypeDescriptor, value: Value, label: str) -> Any:
    x = _numeric_source(value, label)
    if descriptor.decimals is None:
        return np.float64(x)
    exact = Decimal(repr(x))
    with localcontext() as ctx:
        # Quantizing needs room for every integer digit plus the decimals.
        ctx.prec = min(MAX_PREC, max(ctx.prec, exact.adjusted() + descriptor.decimals + 2))
        try:
            quantum = Decimal(1).scaleb(-descriptor.decimals)
            rounded = exact.quantize(quantum, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ABAPTypeError(f"Value assigned to {label} does not fit DECIMALS {descriptor.decimals}")
    return np.float64(float(rounded))


def _coerce_string(_: TypeDescriptor, value: Value, __: str) -> Any:
    return to_text(value)


def _coerce_c(descriptor: TypeDescriptor, value: Value, _: str) -> Any:
    length = descriptor.length if descriptor.length is not None else 1
    return to_text(value)[:length].ljust(length)


def _coerce_n(descriptor: TypeDescriptor, value: Value, label: str) -> Any:
    text = to_text(value)
    if not _DIGITS_ONLY.match(text):
        raise ABAPTypeError(f"Value assigned to {label} must contain only digits")
    if descriptor.length is not None:
        if len(text) > descriptor.length:
            raise ABAPTypeError(f"Value for {label} exceeds the defined length ({descriptor.length})")
        text = text.rjust(descriptor.length, "0")
    return text


def _coerce_d(_: TypeDescriptor, value: Value, label: str) -> Any:
    text = to_text(value)
    if not _DATE.match(text):
        raise ABAPTypeError(f"Value assigned to {label} must use the format YYYYMMDD")
    return text


def _default_zero(_: TypeDescriptor) -> Any:
    return np.float64(0.0)


def _default_n(descriptor: TypeDescriptor) -> Any:
    return "0" * descriptor.length if descriptor.length is not None else "0"


def _default_c(descriptor: TypeDescriptor) -> Any:
    return " " * (descriptor.length if descriptor.length is not None else 1)


def build_default_registry() -> TypeRegistry:
    registry = TypeRegistry()
    registry.register(TypeSpec("i", KIND_NUMERIC, _coerce_i, _default_zero))
    registry.register(TypeSpec("f", KIND_NUMERIC, _coerce_f, _default_zero))
    registry.register(TypeSpec("p", KIND_NUMERIC, _coerce_p, _default_zero, allows_length=True, allows_decimals=True))
    registry.register(TypeSpec("string", KIND_CHARACTER, _coerce_string, lambda _: ""))
    registry.register(TypeSpec("c", KIND_CHARACTER, _coerce_c, _default_c, allows_length=True))
    registry.register(TypeSpec("n", KIND_CHARACTER, _coerce_n, _default_n, allows_length=True))
    registry.register(TypeSpec("d", KIND_CHARACTER, _coerce_d, lambda _: "00000000"))
    return registry


BUILTIN_TYPES = build_default_registry()


# ---- Declarations ----

def build_descriptor(
    type_name: str,
    *,
    name: str,
    table: bool = False,
    length: Optional[int] = None,
    decimals: Optional[int] = None,
) -> TypeDescriptor:
    """Validate declaration metadata and return the resulting descriptor."""
    label = name.upper()
    type_name = type_name.lower()
    if length is not None and length <= 0:
        raise ABAPTypeError(f"LENGTH must be a positive integer in the declaration of {label}")
    if decimals is not None and decimals < 0:
        raise ABAPTypeError(f"DECIMALS must be a non-negative integer in the declaration of {label}")

    if table:
        if type_name not in TABLE_ELEMENT_TYPES:
            raise ABAPTypeError(f'Tables of type "{type_name}" are not supported (variable {label})')
        if length is not None or decimals is not None:
            raise ABAPTypeError(f"Table types do not accept LENGTH or DECIMALS (variable {label})")
        return TypeDescriptor(TYPE_TABLE, element=TypeDescriptor(type_name))

    if not BUILTIN_TYPES.has(type_name):
        supported = ", ".join(sorted(BUILTIN_TYPES.names()))
        raise ABAPTypeError(f'Type "{type_name}" is not supported for variable {label} (supported: {supported})')
    spec = BUILTIN_TYPES.get(type_name)
    if length is not None and not spec.allows_length:
        raise ABAPTypeError(f"Type {type_name.upper()} does not accept LENGTH (variable {label})")
    if decimals is not None and not spec.allows_decimals:
        raise ABAPTypeError(f"Type {type_name.upper()} does not accept DECIMALS (variable {label})")
    if decimals is not None and length is not None and decimals > length:
        raise ABAPTypeError(f"DECIMALS cannot exceed LENGTH for {label}")
    return TypeDescriptor(type_name, length=length, decimals=decimals)


# ---- Coercion ----

def default_value(descriptor: TypeDescriptor) -> Any:
    if descriptor.is_table:
        return []
    spec = BUILTIN_TYPES.get(descriptor.name)
    return spec.default_value(descriptor)


def coerce(descriptor: TypeDescriptor, value: Value, *, name: str) -> Any:
    """Convert an evaluation result into the storage form of a scalar type."""
    if descriptor.is_table:
        raise ABAPTypeError(f"Table {name.upper()} cannot be assigned a single value")
    spec = BUILTIN_TYPES.get(descriptor.name)
    return spec.coerce(descriptor, value, name.upper())


def coerce_element(descriptor: TypeDescriptor, value: Value, *, name: str) -> Value:
    """Coerce one table element, keeping it tagged for later reads."""
    assert descriptor.element is not None
    return to_value(descriptor.element, coerce(descriptor.element, value, name=name))


def coerce_table(descriptor: TypeDescriptor, elements: List[Value], *, name: str) -> List[Value]:
    return [coerce_element(descriptor, element, name=name) for element in elements]


def to_value(descriptor: TypeDescriptor, raw: Any) -> Value:
    """Wrap a stored scalar back into an evaluation result."""
    if descriptor.kind == KIND_NUMERIC:
        return number(raw)
    return string(raw)
