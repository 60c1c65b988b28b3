"""
Offline analysis of a parsed Program: diagnostics for tooling and a JSON-ready
schema describing the endpoints, functions, classes and secrets.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from shrimpl.shrimpl_builtins import BUILTIN_NAMESPACES
from shrimpl.shrimpl_datatypes import (
    Expr, Var, ListExpr, MapExpr, Binary, Call, MethodCall, If, Repeat, Try,
    EndpointDecl, FunctionDef, JsonRaw, Program,
)
from shrimpl.shrimpl_router import RESERVED_BINDINGS


@dataclass(frozen=True)
class Diagnostic:
    severity: str
    message: str
    location: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"severity": self.severity, "message": self.message}
        if self.location:
            out["location"] = dict(self.location)
        return out


def _children(expr: Expr) -> List[Expr]:
    match expr:
        case ListExpr(items=items):
            return list(items)
        case MapExpr(entries=entries):
            return [value for _, value in entries]
        case Binary(left=left, right=right):
            return [left, right]
        case Call(args=args) | MethodCall(args=args):
            return list(args)
        case If(branches=branches, else_branch=else_branch):
            out = [part for branch in branches for part in branch]
            if else_branch is not None:
                out.append(else_branch)
            return out
        case Repeat(count=count, body=body):
            return [count, body]
        case _:
            return []


def walk(expr: Expr, bound: FrozenSet[str] = frozenset()) -> Iterator[Tuple[Expr, FrozenSet[str]]]:
    """Yields every sub-expression with the names a `catch` binds around it."""
    yield expr, bound
    if isinstance(expr, Try):
        yield from walk(expr.try_body, bound)
        if expr.catch_body is not None:
            inner = bound | {expr.catch_var} if expr.catch_var else bound
            yield from walk(expr.catch_body, inner)
        if expr.finally_body is not None:
            yield from walk(expr.finally_body, bound)
        return
    for child in _children(expr):
        yield from walk(child, bound)


def _endpoint_label(endpoint: EndpointDecl) -> str:
    return f"{endpoint.method.value} {endpoint.path}"


def _location(line: Optional[int], **where) -> Dict[str, Any]:
    loc = {k: v for k, v in where.items() if v is not None}
    if line is not None:
        loc["line"] = line
    return loc


class _Checker:
    def __init__(self, program: Program):
        self.program = program
        self.secret_names = {s.name for s in program.secrets}
        self.diagnostics: List[Diagnostic] = []

    def add(self, severity: str, message: str, location: Optional[Dict[str, Any]] = None):
        self.diagnostics.append(Diagnostic(severity, message, location or None))

    def run(self) -> List[Diagnostic]:
        self.check_duplicates()
        self.check_endpoints()
        for fn in self.program.functions.values():
            self.check_callable(fn, _location(fn.line, function=fn.name))
        for cls in self.program.classes.values():
            for method in cls.methods.values():
                self.check_callable(method, _location(method.line, **{"class": cls.name, "method": method.name}))
        return self.diagnostics

    def check_duplicates(self):
        counts = Counter((d.kind, d.owner, d.name) for d in self.program.declarations)
        reported = set()
        for decl in self.program.declarations:
            key = (decl.kind, decl.owner, decl.name)
            if counts[key] < 2 or key in reported:
                continue
            reported.add(key)
            if decl.kind == 'method':
                self.add("warning",
                         f"Method '{decl.name}' is declared {counts[key]} times in class '{decl.owner}'; "
                         f"the last declaration wins",
                         _location(decl.line, **{"class": decl.owner}))
            else:
                self.add("warning",
                         f"Duplicate {decl.kind} '{decl.name}' declared {counts[key]} times; "
                         f"the last declaration wins",
                         _location(decl.line, **{decl.kind: decl.name}))

    def check_endpoints(self):
        seen = set()
        for endpoint in self.program.endpoints:
            label = _endpoint_label(endpoint)
            loc = _location(endpoint.line, endpoint=label)
            key = (endpoint.method, endpoint.path)
            if key in seen:
                self.add("error", f"Duplicate endpoint {label}; only the first declaration is served", loc)
            seen.add(key)
            if not endpoint.path.startswith("/"):
                self.add("warning", f"Endpoint path '{endpoint.path}' does not start with '/'", loc)
            if not isinstance(endpoint.body, JsonRaw):
                self.check_calls(endpoint.body.expr, loc)

    def check_callable(self, fn: FunctionDef, loc: Dict[str, Any]):
        for param in fn.params:
            if param in self.secret_names:
                self.add("info", f"Parameter '{param}' of {fn.name} shadows secret '{param}'", loc)
        self.check_calls(fn.body, loc)
        known = set(fn.params) | self.secret_names
        reported = set()
        for node, bound in walk(fn.body):
            if isinstance(node, Var) and node.name not in known and node.name not in bound \
                    and node.name not in reported:
                reported.add(node.name)
                self.add("warning", f"'{node.name}' is not a parameter of {fn.name} and will be undefined",
                         {**loc, **_location(node.line)})

    def check_calls(self, body: Expr, loc: Dict[str, Any]):
        for node, _ in walk(body):
            where = {**loc, **_location(node.line)}
            match node:
                case Call(name=name, args=args):
                    fn = self.program.functions.get(name)
                    if fn is None:
                        self.add("error", f"Call to undefined function '{name}'", where)
                    elif len(args) != len(fn.params):
                        self.add("warning",
                                 f"Function '{name}' expects {len(fn.params)} argument(s), "
                                 f"called with {len(args)}", where)
                case MethodCall(class_name=class_name, method_name=method_name, args=args):
                    self.check_method_call(class_name, method_name, len(args), where)

    def check_method_call(self, class_name: str, method_name: str, argc: int, where: Dict[str, Any]):
        cls = self.program.classes.get(class_name)
        if cls is not None:
            method = cls.methods.get(method_name)
            if method is None:
                self.add("error", f"Class '{class_name}' has no method '{method_name}'", where)
            elif argc != len(method.params):
                self.add("warning",
                         f"Method '{class_name}.{method_name}' expects {len(method.params)} argument(s), "
                         f"called with {argc}", where)
        elif class_name in BUILTIN_NAMESPACES:
            if method_name not in BUILTIN_NAMESPACES[class_name]:
                self.add("error", f"Unknown helper '{class_name}.{method_name}'", where)
        else:
            self.add("error", f"Call to method '{method_name}' on unknown class '{class_name}'", where)


def build_diagnostics(program: Program) -> List[Diagnostic]:
    """Collects diagnostics for a Program. Never raises."""
    try:
        return _Checker(program).run()
    except Exception as e:
        return [Diagnostic("error", f"Checker failed: {e}")]


def endpoint_inputs(endpoint: EndpointDecl, program: Program) -> List[str]:
    """Names an endpoint body reads from the request (query or payload fields)."""
    if isinstance(endpoint.body, JsonRaw):
        return []
    secrets = {s.name for s in program.secrets}
    names = []
    for node, bound in walk(endpoint.body.expr):
        if isinstance(node, Var) and node.name not in bound and node.name not in secrets \
                and node.name not in RESERVED_BINDINGS and node.name not in names:
            names.append(node.name)
    return names


def build_schema(program: Program) -> Dict[str, Any]:
    """Projects a Program into a JSON-ready description."""
    endpoints = []
    for endpoint in program.endpoints:
        endpoints.append({
            "method": endpoint.method.value,
            "path": endpoint.path,
            "body": "json" if isinstance(endpoint.body, JsonRaw) else "expr",
            "inputs": endpoint_inputs(endpoint, program),
            "line": endpoint.line,
        })
    return {
        "server": {"port": program.server.port, "tls": program.server.tls},
        "endpoints": endpoints,
        "functions": [
            {"name": fn.name, "params": list(fn.params)} for fn in program.functions.values()
        ],
        "classes": [
            {
                "name": cls.name,
                "methods": [{"name": m.name, "params": list(m.params)} for m in cls.methods.values()],
            }
            for cls in program.classes.values()
        ],
        "secrets": [{"name": s.name, "key": s.key} for s in program.secrets],
    }
