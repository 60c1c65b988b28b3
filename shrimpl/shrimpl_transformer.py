"""
Transforms the raw lark parse tree into the semantic AST from shrimpl_datatypes.
"""

import json
import math
from typing import Optional

from lark import Token, Transformer, v_args

from shrimpl.shrimpl_datatypes import (
    Number, Str, Bool, Var, ListExpr, MapExpr, Binary, Call, MethodCall,
    If, Repeat, Try, BinOp,
    Method, ServerDecl, TextExpr, JsonRaw, EndpointDecl, FunctionDef, ClassDef,
    SecretDecl, Declaration, Program, ShrimplSyntaxError,
)

_OPS = {op.value: op for op in BinOp}


def _line(meta) -> Optional[int]:
    if getattr(meta, 'empty', True):
        return None
    return getattr(meta, 'line', None)


def _present(children) -> list:
    # maybe_placeholders fills absent optionals with None
    return [c for c in children if c is not None]


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def decode_string(token: Token) -> str:
    """Decodes a double-quoted literal using JSON escape rules."""
    try:
        return json.loads(str(token), strict=False)
    except ValueError:
        raise ShrimplSyntaxError(
            f"Invalid escape sequence in string {str(token)}",
            line=token.line, col=token.column,
        ) from None


@v_args(meta=True)
class ShrimplTransformer(Transformer):
    """Builds a Program out of the parse tree produced by shrimpl_grammar.lark."""

    # --- Program ---------------------------------------------------------

    def start(self, meta, children):
        server = ServerDecl()
        endpoints = []
        functions = {}
        classes = {}
        secrets = []
        declarations = []

        for kind, decl in children:
            match kind:
                case 'server':
                    server = decl
                case 'endpoint':
                    endpoints.append(decl)
                case 'function':
                    functions[decl.name] = decl
                    declarations.append(Declaration('function', decl.name, line=decl.line))
                case 'class':
                    cls, method_decls = decl
                    classes[cls.name] = cls
                    declarations.append(Declaration('class', cls.name, line=cls.line))
                    declarations.extend(method_decls)
                case 'secret':
                    secrets.append(decl)
                    declarations.append(Declaration('secret', decl.name, line=decl.line))

        return Program(
            server=server,
            endpoints=tuple(endpoints),
            functions=functions,
            classes=classes,
            secrets=tuple(secrets),
            declarations=tuple(declarations),
        )

    # --- Declarations ----------------------------------------------------

    def server_decl(self, meta, children):
        number = children[0]
        tls = any(isinstance(c, Token) and c.type == 'TLS' for c in children[1:])
        text = str(number)
        if '.' in text:
            raise ShrimplSyntaxError(f"Server port must be an integer, got {text}",
                                     line=number.line, col=number.column)
        port = int(text)
        if not 0 <= port <= 65535:
            raise ShrimplSyntaxError(f"Server port {port} is out of range (0-65535)",
                                     line=number.line, col=number.column)
        return ('server', ServerDecl(port=port, tls=tls))

    def secret_decl(self, meta, children):
        name, key = children
        return ('secret', SecretDecl(str(name), decode_string(key), line=_line(meta)))

    def params(self, meta, children):
        seen = []
        for tok in children:
            name = str(tok)
            if name in seen:
                raise ShrimplSyntaxError(f"Duplicate parameter name '{name}'",
                                         line=tok.line, col=tok.column)
            seen.append(name)
        return tuple(seen)

    def _function(self, meta, children) -> FunctionDef:
        name = children[0]
        params = children[1] if len(children) == 3 and children[1] is not None else ()
        body = children[-1]
        return FunctionDef(str(name), params, body, line=_line(meta))

    def func_decl(self, meta, children):
        return ('function', self._function(meta, children))

    def method_decl(self, meta, children):
        return self._function(meta, children)

    def class_decl(self, meta, children):
        name = str(children[0])
        methods = {}
        method_decls = []
        for fn in children[1:]:
            methods[fn.name] = fn
            method_decls.append(Declaration('method', fn.name, owner=name, line=fn.line))
        return ('class', (ClassDef(name, methods, line=_line(meta)), method_decls))

    def http_method(self, meta, children):
        return Method(str(children[0]))

    def endpoint_decl(self, meta, children):
        method, path, body = children
        if not isinstance(body, JsonRaw):
            body = TextExpr(body)
        return ('endpoint', EndpointDecl(method, decode_string(path), body, line=_line(meta)))

    def json_body(self, meta, children):
        token = children[0]
        doc = str(token)[len('json'):].lstrip()
        try:
            _, end = json.JSONDecoder(parse_constant=_reject_constant).raw_decode(doc)
        except ValueError as e:
            raise ShrimplSyntaxError(f"Invalid JSON body: {e}", line=token.line, col=token.column) from None
        rest = doc[end:].strip()
        if rest and not rest.startswith('#'):
            raise ShrimplSyntaxError(f"Unexpected text after JSON body: {rest!r}",
                                     line=token.line, col=token.column)
        return JsonRaw(doc[:end])

    # --- Compound expressions --------------------------------------------

    def if_expr(self, meta, children):
        branches = [(children[0], children[1])]
        else_branch = None
        for clause in _present(children[2:]):
            if clause[0] == 'elif':
                branches.append((clause[1], clause[2]))
            else:
                else_branch = clause[1]
        return If(tuple(branches), else_branch, line=_line(meta))

    def elif_clause(self, meta, children):
        return ('elif', children[0], children[1])

    def else_clause(self, meta, children):
        return ('else', children[0])

    def repeat_expr(self, meta, children):
        count, body = children
        return Repeat(count, body, line=_line(meta))

    def try_expr(self, meta, children):
        catch_var = catch_body = finally_body = None
        for clause in _present(children[1:]):
            if clause[0] == 'catch':
                _, catch_var, catch_body = clause
            else:
                finally_body = clause[1]
        return Try(children[0], catch_var, catch_body, finally_body, line=_line(meta))

    def catch_clause(self, meta, children):
        name = None
        for c in children[:-1]:
            if isinstance(c, Token):
                name = str(c)
        return ('catch', name, children[-1])

    def finally_clause(self, meta, children):
        return ('finally', children[0])

    # --- Operators -------------------------------------------------------

    def binary(self, meta, children):
        left, op, right = children
        return Binary(left, op, right, line=_line(meta))

    def or_op(self, meta, children):
        return Binary(children[0], BinOp.OR, children[1], line=_line(meta))

    def and_op(self, meta, children):
        return Binary(children[0], BinOp.AND, children[1], line=_line(meta))

    def neg(self, meta, children):
        # -x is sugar for 0 - x
        line = _line(meta)
        return Binary(Number(0.0, line=line), BinOp.SUB, children[0], line=line)

    def _op(self, meta, children):
        return _OPS[str(children[0])]

    eq_op = rel_op = add_op = mul_op = _op

    # --- Atoms -----------------------------------------------------------

    def number(self, meta, children):
        token = children[0]
        value = float(token)
        if not math.isfinite(value):
            raise ShrimplSyntaxError(f"Number literal out of range: {token}", line=token.line, col=token.column)
        return Number(value, line=_line(meta))

    def string(self, meta, children):
        return Str(decode_string(children[0]), line=_line(meta))

    def true(self, meta, children):
        return Bool(True, line=_line(meta))

    def false(self, meta, children):
        return Bool(False, line=_line(meta))

    def var(self, meta, children):
        return Var(str(children[0]), line=_line(meta))

    def call(self, meta, children):
        name, *args = children
        return Call(str(name), tuple(_present(args)), line=_line(meta))

    def method_call(self, meta, children):
        class_name, method_name, *args = children
        return MethodCall(str(class_name), str(method_name), tuple(_present(args)), line=_line(meta))

    def list(self, meta, children):
        return ListExpr(tuple(_present(children)), line=_line(meta))

    def map(self, meta, children):
        return MapExpr(tuple(_present(children)), line=_line(meta))

    def pair(self, meta, children):
        key, value = children
        if key.type == 'STRING':
            return (decode_string(key), value)
        return (str(key), value)
