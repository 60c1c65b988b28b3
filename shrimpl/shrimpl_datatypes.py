"""
Defines the core data types for the Shrimpl language runtime.

This module provides the AST node classes produced by the parser, the
program-level declarations, the error hierarchy and a handful of helpers
for working with runtime values (plain Python floats, strings, bools,
lists and dicts).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
import collections.abc
import math


# =================================================================
# Errors
# =================================================================

class ShrimplError(Exception):
    """Base class for every error raised by the Shrimpl toolchain."""


class ShrimplLoadError(ShrimplError):
    """A source file (entry or import) could not be found or read."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ShrimplSyntaxError(ShrimplError):
    """The parser could not derive a Program from the source text."""
    def __init__(self, message: str, line: Optional[int] = None, col: Optional[int] = None,
                 context: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.col = col
        self.context = context

    def __str__(self):
        if self.line is None:
            return self.message
        col_info = f", col {self.col}" if self.col is not None else ""
        text = f"{self.message} (line {self.line}{col_info})"
        if self.context:
            text += "\n" + self.context
        return text


class ShrimplRuntimeError(ShrimplError):
    """
    A recoverable evaluation failure.

    Raised by the evaluator and caught either by an enclosing `try` (which
    binds `message` to the catch variable) or by the router, which turns it
    into a failed response for that single request.
    """
    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        # filled in by the evaluator when the error leaves a function call
        self.stacktrace: Optional[str] = None


class ShrimplConfigError(ShrimplError):
    """A configuration file exists but has an invalid shape."""


# =================================================================
# Expressions
# =================================================================

class BinOp(Enum):
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    EQ = "=="
    NE = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    AND = "and"
    OR = "or"

    @property
    def is_arithmetic(self) -> bool:
        return self in (BinOp.ADD, BinOp.SUB, BinOp.MUL, BinOp.DIV)

    @property
    def is_ordering(self) -> bool:
        return self in (BinOp.LT, BinOp.LE, BinOp.GT, BinOp.GE)


class Expr:
    """Base class for all expression nodes. `line` never takes part in equality."""
    __slots__ = ()


@dataclass(frozen=True)
class Number(Expr):
    value: float
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Str(Expr):
    value: str
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Bool(Expr):
    value: bool
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Var(Expr):
    name: str
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ListExpr(Expr):
    items: Tuple[Expr, ...]
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class MapExpr(Expr):
    # Entries in source order; duplicate keys are resolved at evaluation time.
    entries: Tuple[Tuple[str, Expr], ...]
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Binary(Expr):
    left: Expr
    op: BinOp
    right: Expr
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: Tuple[Expr, ...]
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class MethodCall(Expr):
    class_name: str
    method_name: str
    args: Tuple[Expr, ...]
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class If(Expr):
    branches: Tuple[Tuple[Expr, Expr], ...]
    else_branch: Optional[Expr] = None
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Repeat(Expr):
    count: Expr
    body: Expr
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Try(Expr):
    try_body: Expr
    catch_var: Optional[str] = None
    catch_body: Optional[Expr] = None
    finally_body: Optional[Expr] = None
    line: Optional[int] = field(default=None, compare=False, repr=False)


# =================================================================
# Declarations
# =================================================================

class Method(Enum):
    GET = "GET"
    POST = "POST"


@dataclass(frozen=True)
class ServerDecl:
    port: int = 3000
    tls: bool = False


@dataclass(frozen=True)
class TextExpr:
    """An endpoint body evaluated per request."""
    expr: Expr


@dataclass(frozen=True)
class JsonRaw:
    """An endpoint body served verbatim as JSON."""
    text: str


Body = Union[TextExpr, JsonRaw]


@dataclass(frozen=True)
class EndpointDecl:
    method: Method
    path: str
    body: Body
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class FunctionDef:
    name: str
    params: Tuple[str, ...]
    body: Expr
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ClassDef:
    name: str
    methods: Dict[str, FunctionDef]
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class SecretDecl:
    name: str
    key: str
    line: Optional[int] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Declaration:
    """One entry of the source-order declaration log kept for the checker."""
    kind: str           # 'function' | 'class' | 'secret' | 'method'
    name: str
    owner: Optional[str] = None
    line: Optional[int] = field(default=None, compare=False)


@dataclass(frozen=True)
class Program:
    """A parsed Shrimpl program. Built once, shared read-only by every request."""
    server: ServerDecl = field(default_factory=ServerDecl)
    endpoints: Tuple[EndpointDecl, ...] = ()
    functions: Dict[str, FunctionDef] = field(default_factory=dict)
    classes: Dict[str, ClassDef] = field(default_factory=dict)
    secrets: Tuple[SecretDecl, ...] = ()
    declarations: Tuple[Declaration, ...] = field(default=(), compare=False)


# =================================================================
# Runtime values
# =================================================================

Value = Union[float, str, bool, List[Any], Dict[str, Any]]


def value_kind(value: Any) -> str:
    """Names the Shrimpl kind of a runtime value, as used in error messages."""
    # bool must be tested before numbers: True is an int in Python.
    if isinstance(value, bool):
        return "Boolean"
    if isinstance(value, (int, float)):
        return "Number"
    if isinstance(value, str):
        return "Text"
    if isinstance(value, list):
        return "List"
    if isinstance(value, collections.abc.Mapping):
        return "Map"
    return type(value).__name__


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality. Values of different kinds are never equal."""
    kind = value_kind(a)
    if kind != value_kind(b):
        return False
    if kind == "List":
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if kind == "Map":
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[k], b[k]) for k in a)
    return a == b


def finite(number: float, line: Optional[int] = None) -> float:
    """Returns `number` as a float, or raises if it overflowed or is NaN."""
    try:
        number = float(number)
    except OverflowError:
        raise ShrimplRuntimeError("Number out of range", line) from None
    if not math.isfinite(number):
        raise ShrimplRuntimeError("Number out of range", line)
    return number


def to_value(obj: Any) -> Value:
    """Converts decoded JSON/YAML data into a Shrimpl value."""
    if obj is None:
        return ""
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, (int, float)):
        # NaN, Infinity and huge integers have no Number counterpart
        return finite(obj)
    if isinstance(obj, str):
        return obj
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): to_value(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_value(x) for x in obj]
    return str(obj)


def to_builtin(value: Any) -> Any:
    """Converts a Shrimpl value into JSON-ready data; integral Numbers become ints."""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, list):
        return [to_builtin(x) for x in value]
    if isinstance(value, collections.abc.Mapping):
        return {k: to_builtin(v) for k, v in value.items()}
    return value
