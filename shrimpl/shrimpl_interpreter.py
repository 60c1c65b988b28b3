"""
The Shrimpl evaluator.

Expressions are evaluated by an async tree walk over the frozen AST from
shrimpl_datatypes. Every failure a Shrimpl program can trigger surfaces as a
ShrimplRuntimeError, which `try` can catch and the router turns into an error
response.
"""

import math
import os
import sys
from typing import Any, Callable, Dict, List, Optional

from shrimpl.shrimpl_builtins import Builtins
from shrimpl.shrimpl_datatypes import (
    Expr, Number, Str, Bool, Var, ListExpr, MapExpr, Binary, Call, MethodCall,
    If, Repeat, Try, BinOp, FunctionDef, Program, ShrimplRuntimeError,
    Value, finite, value_kind, values_equal,
)
from shrimpl.shrimpl_printer import Printer
from shrimpl.shrimpl_serialize import format_number

DEFAULT_MAX_REPEAT = 100_000
DEFAULT_MAX_CALL_DEPTH = 100

SecretResolver = Callable[[str], Optional[str]]


def _no_secrets(key: str) -> Optional[str]:
    return None


class Environment:
    """
    Variable bindings for one evaluation.

    Function calls start from a fresh Environment holding only the parameters;
    the only nesting is the child created for a `catch` variable.
    """

    def __init__(self, bindings: Optional[Dict[str, Value]] = None, parent: Optional['Environment'] = None):
        self.bindings: Dict[str, Value] = dict(bindings or {})
        self.parent = parent

    def lookup(self, name: str):
        env = self
        while env is not None:
            if name in env.bindings:
                return True, env.bindings[name]
            env = env.parent
        return False, None

    def child(self, bindings: Optional[Dict[str, Value]] = None) -> 'Environment':
        return Environment(bindings, parent=self)

    def __contains__(self, name: str) -> bool:
        return self.lookup(name)[0]

    def __getitem__(self, name: str) -> Value:
        found, value = self.lookup(name)
        if not found:
            raise KeyError(name)
        return value

    def __repr__(self):
        return f"<Environment {sorted(self.bindings)}>"


def apply_binary(op: BinOp, left: Value, right: Value, line: Optional[int] = None) -> Value:
    """Applies a non-short-circuit operator to two already evaluated values."""
    lk, rk = value_kind(left), value_kind(right)
    if op is BinOp.EQ:
        return values_equal(left, right)
    if op is BinOp.NE:
        return not values_equal(left, right)
    if op.is_arithmetic:
        if op is BinOp.ADD and lk == rk == "Text":
            return left + right
        if lk == rk == "Number":
            match op:
                case BinOp.ADD:
                    return finite(left + right, line)
                case BinOp.SUB:
                    return finite(left - right, line)
                case BinOp.MUL:
                    return finite(left * right, line)
                case BinOp.DIV:
                    if right == 0:
                        raise ShrimplRuntimeError("Division by zero", line)
                    return finite(left / right, line)
        raise ShrimplRuntimeError(_type_mismatch(op, left, right), line)
    if op.is_ordering:
        if lk != rk or lk not in ("Number", "Text"):
            raise ShrimplRuntimeError(_type_mismatch(op, left, right), line)
        match op:
            case BinOp.LT:
                return left < right
            case BinOp.LE:
                return left <= right
            case BinOp.GT:
                return left > right
            case BinOp.GE:
                return left >= right
    raise ShrimplRuntimeError(f"Unsupported operator '{op.value}'", line)


def _type_mismatch(op: BinOp, left, right) -> str:
    p = Printer()
    return (f"Cannot apply '{op.value}' to {value_kind(left)} {p.short(left)} "
            f"and {value_kind(right)} {p.short(right)}")


class Evaluator:
    """
    The Shrimpl execution engine.

    An Evaluator keeps a call stack, so the router creates one per request;
    the Program it reads is shared and never modified.
    """

    def __init__(self, program: Program, secret_resolver: Optional[SecretResolver] = None, *,
                 max_repeat: int = DEFAULT_MAX_REPEAT, max_call_depth: int = DEFAULT_MAX_CALL_DEPTH):
        self.program = program
        self.secret_resolver = secret_resolver or _no_secrets
        self.max_repeat = max_repeat
        self.max_call_depth = max_call_depth
        self.builtins = Builtins(self)
        self.call_stack: List[Dict[str, Any]] = []
        # last declaration wins
        self._secret_keys = {decl.name: decl.key for decl in program.secrets}

    def _dbg(self, *parts):
        if os.environ.get("SHRIMPL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    # --- secrets ---
    def resolve_secret(self, name: str, line: Optional[int] = None) -> str:
        """Resolves a declared secret name to its value, or raises."""
        key = self._secret_keys.get(name)
        if key is None:
            raise ShrimplRuntimeError(f"Unknown secret '{name}'", line)
        value = self.secret_resolver(key)
        if value is None:
            raise ShrimplRuntimeError(f"Secret '{name}' is not set (key {key})", line)
        self._dbg("SECRET", name, "resolved")
        return str(value)

    def secret_available(self, name: str) -> bool:
        key = self._secret_keys.get(name)
        return key is not None and self.secret_resolver(key) is not None

    # --- call stack ---
    def _push_frame(self, name: str, args: list, line: Optional[int]):
        self.call_stack.append({'name': name, 'args': args, 'line': line})

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def format_stacktrace(self) -> str:
        if not self.call_stack:
            return ""
        p = Printer()
        lines = ["Shrimpl stacktrace:"]
        for frame in reversed(self.call_stack):
            args = ", ".join(p.short(a, limit=24) for a in frame['args'])
            where = f" (line {frame['line']})" if frame['line'] else ""
            lines.append(f"  {frame['name']}({args}){where}")
        return "\n".join(lines)

    # --- evaluation ---
    async def eval(self, expr: Expr, env: Environment) -> Value:
        """Evaluates one expression in `env`."""
        match expr:
            case Number(value=value):
                return float(value)
            case Str(value=value) | Bool(value=value):
                return value
            case Var(name=name):
                return self._lookup(name, env, expr.line)
            case ListExpr(items=items):
                return [await self.eval(item, env) for item in items]
            case MapExpr(entries=entries):
                result = {}
                for key, value_expr in entries:
                    result[key] = await self.eval(value_expr, env)
                return result
            case Binary():
                return await self._eval_binary(expr, env)
            case If():
                return await self._eval_if(expr, env)
            case Repeat():
                return await self._eval_repeat(expr, env)
            case Try():
                return await self._eval_try(expr, env)
            case Call():
                return await self._eval_call(expr, env)
            case MethodCall():
                return await self._eval_method_call(expr, env)
            case _:
                raise ShrimplRuntimeError(f"Cannot evaluate {type(expr).__name__}")

    def _lookup(self, name: str, env: Environment, line: Optional[int]) -> Value:
        found, value = env.lookup(name)
        if found:
            return value
        if name in self._secret_keys:
            return self.resolve_secret(name, line)
        raise ShrimplRuntimeError(f"Unknown variable '{name}'", line)

    async def _eval_binary(self, expr: Binary, env: Environment) -> Value:
        left = await self.eval(expr.left, env)
        if expr.op in (BinOp.AND, BinOp.OR):
            self._expect_bool(left, f"Left side of '{expr.op.value}'", expr.line)
            if expr.op is BinOp.AND and not left:
                return False
            if expr.op is BinOp.OR and left:
                return True
            right = await self.eval(expr.right, env)
            self._expect_bool(right, f"Right side of '{expr.op.value}'", expr.line)
            return right
        right = await self.eval(expr.right, env)
        return apply_binary(expr.op, left, right, expr.line)

    def _expect_bool(self, value: Value, what: str, line: Optional[int]):
        if not isinstance(value, bool):
            raise ShrimplRuntimeError(
                f"{what} must be a Boolean, got {value_kind(value)} {Printer().short(value)}", line)

    async def _eval_if(self, expr: If, env: Environment) -> Value:
        for condition, body in expr.branches:
            test = await self.eval(condition, env)
            self._expect_bool(test, "If condition", condition.line or expr.line)
            if test:
                return await self.eval(body, env)
        if expr.else_branch is not None:
            return await self.eval(expr.else_branch, env)
        return ""

    async def _eval_repeat(self, expr: Repeat, env: Environment) -> Value:
        count = await self.eval(expr.count, env)
        if value_kind(count) != "Number" or not math.isfinite(count):
            raise ShrimplRuntimeError(
                f"Repeat count must be a Number, got {value_kind(count)} {Printer().short(count)}", expr.line)
        if count < 0:
            raise ShrimplRuntimeError(f"Repeat count must not be negative, got {format_number(count)}", expr.line)
        times = math.floor(count)
        if times > self.max_repeat:
            raise ShrimplRuntimeError(
                f"Repeat count {times} exceeds the limit of {self.max_repeat}", expr.line)
        result: Value = ""
        for _ in range(times):
            result = await self.eval(expr.body, env)
        return result

    async def _eval_try(self, expr: Try, env: Environment) -> Value:
        try:
            try:
                return await self.eval(expr.try_body, env)
            except ShrimplRuntimeError as err:
                if expr.catch_body is None:
                    raise
                self._dbg("CATCH", err.message)
                bindings = {expr.catch_var: err.message} if expr.catch_var else {}
                return await self.eval(expr.catch_body, env.child(bindings))
        finally:
            # an error raised here replaces the pending result or error
            if expr.finally_body is not None:
                await self.eval(expr.finally_body, env)

    async def _eval_args(self, args, env: Environment) -> list:
        return [await self.eval(arg, env) for arg in args]

    async def _eval_call(self, expr: Call, env: Environment) -> Value:
        fn = self.program.functions.get(expr.name)
        if fn is None:
            raise ShrimplRuntimeError(f"Unknown function '{expr.name}'", expr.line)
        args = await self._eval_args(expr.args, env)
        return await self.invoke(fn, args, name=expr.name, line=expr.line)

    async def _eval_method_call(self, expr: MethodCall, env: Environment) -> Value:
        label = f"{expr.class_name}.{expr.method_name}"
        cls = self.program.classes.get(expr.class_name)
        if cls is not None:
            fn = cls.methods.get(expr.method_name)
            if fn is None:
                raise ShrimplRuntimeError(
                    f"Class '{expr.class_name}' has no method '{expr.method_name}'", expr.line)
            args = await self._eval_args(expr.args, env)
            return await self.invoke(fn, args, name=label, line=expr.line)
        if not self.builtins.has_namespace(expr.class_name):
            raise ShrimplRuntimeError(f"Unknown class '{expr.class_name}'", expr.line)
        args = await self._eval_args(expr.args, env)
        self._dbg("BUILTIN", label, args)
        return self.builtins.call(expr.class_name, expr.method_name, args, expr.line)

    async def invoke(self, fn: FunctionDef, args: list, *, name: Optional[str] = None,
                     line: Optional[int] = None) -> Value:
        """Calls a user function or method with already evaluated arguments."""
        name = name or fn.name
        if len(args) != len(fn.params):
            raise ShrimplRuntimeError(
                f"{name} expects {len(fn.params)} argument(s), got {len(args)}", line)
        if len(self.call_stack) >= self.max_call_depth:
            raise ShrimplRuntimeError(
                f"Maximum call depth of {self.max_call_depth} exceeded in {name}", line)
        self._push_frame(name, args, line)
        self._dbg("CALL", name, args)
        try:
            return await self.eval(fn.body, Environment(dict(zip(fn.params, args))))
        except ShrimplRuntimeError as err:
            if err.stacktrace is None:
                err.stacktrace = self.format_stacktrace()
            raise
        except RecursionError:
            # the Python stack ran out before max_call_depth was reached
            raise ShrimplRuntimeError(f"Maximum recursion depth exceeded in {name}", line) from None
        finally:
            self._pop_frame()
