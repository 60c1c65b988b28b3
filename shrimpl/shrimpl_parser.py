"""
Source text -> Program.

Wraps the lark LALR parser built from shrimpl_grammar.lark, the indentation
post-lexer and the ShrimplTransformer, and turns every lark failure into a
ShrimplSyntaxError with a line, column and caret-annotated excerpt.
"""

import threading
from pathlib import Path
from typing import Optional

from lark import Lark
from lark.exceptions import (
    LarkError, UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken, VisitError,
)
from lark.indenter import Indenter

from shrimpl.shrimpl_datatypes import Program, ShrimplSyntaxError
from shrimpl.shrimpl_transformer import ShrimplTransformer

GRAMMAR_PATH = Path(__file__).parent / "shrimpl_grammar.lark"

_READABLE_TERMINALS = {
    '_NL': 'end of line',
    '_INDENT': 'indented block',
    '_DEDENT': 'end of block',
    '$END': 'end of input',
    'NAME': 'identifier',
    'NUMBER': 'number',
    'STRING': 'string',
    'JSON_RAW': 'json body',
}


class ShrimplIndenter(Indenter):
    NL_type = '_NL'
    OPEN_PAREN_types = ['LPAR', 'LSQB', 'LBRACE']
    CLOSE_PAREN_types = ['RPAR', 'RSQB', 'RBRACE']
    INDENT_type = '_INDENT'
    DEDENT_type = '_DEDENT'
    tab_len = 4


def source_context(source: str, line: Optional[int], col: Optional[int]) -> str:
    """Returns the offending source line with a caret under the column."""
    if not line:
        return ""
    lines = source.split("\n")
    if not 1 <= line <= len(lines):
        return ""
    text = lines[line - 1].rstrip("\r")
    caret = " " * (max(col or 1, 1) - 1) + "^"
    return f"  {text}\n  {caret}"


class ShrimplParser:
    """Parses Shrimpl source into a Program. The lark parser is built once and shared."""

    _lark: Optional[Lark] = None
    # The indentation post-lexer keeps state between tokens.
    _lock = threading.Lock()

    def __init__(self):
        if ShrimplParser._lark is None:
            ShrimplParser._lark = Lark(
                GRAMMAR_PATH.read_text(encoding="utf-8"),
                parser="lalr",
                postlex=ShrimplIndenter(),
                propagate_positions=True,
                maybe_placeholders=True,
            )
        self.transformer = ShrimplTransformer()

    def parse(self, source: str) -> Program:
        source = source.replace("\r\n", "\n")
        if not source.endswith("\n"):
            source += "\n"
        try:
            with ShrimplParser._lock:
                tree = ShrimplParser._lark.parse(source)
            return self.transformer.transform(tree)
        except VisitError as e:
            if isinstance(e.orig_exc, ShrimplSyntaxError):
                err = e.orig_exc
                err.context = source_context(source, err.line, err.col)
                raise err from None
            raise
        except UnexpectedInput as e:
            line, col = _position(e)
            raise ShrimplSyntaxError(
                self._describe(e, source), line=line, col=col,
                context=source_context(source, line, col),
            ) from None
        except LarkError as e:
            # DedentError and friends carry no position
            raise ShrimplSyntaxError(f"Invalid indentation: {e}") from None

    def _describe(self, e: UnexpectedInput, source: str) -> str:
        match e:
            case UnexpectedToken(token=token):
                if token.type in _READABLE_TERMINALS:
                    found = _READABLE_TERMINALS[token.type]
                else:
                    found = repr(str(token))
                msg = f"Unexpected {found}"
                expected = sorted({self._readable(name) for name in e.expected})
                if expected and len(expected) <= 8:
                    msg += f", expected one of: {', '.join(expected)}"
                return msg
            case UnexpectedCharacters():
                pos = e.pos_in_stream
                char = source[pos] if pos is not None and pos < len(source) else '?'
                return f"Unexpected character {char!r}"
            case UnexpectedEOF():
                return "Unexpected end of input"
            case _:
                return str(e)

    def _readable(self, name: str) -> str:
        if name in _READABLE_TERMINALS:
            return _READABLE_TERMINALS[name]
        try:
            term = ShrimplParser._lark.get_terminal(name)
        except KeyError:
            return name
        if term.pattern.type == 'str':
            return repr(term.pattern.value)
        return name


def _position(e: UnexpectedInput):
    line = getattr(e, 'line', None)
    col = getattr(e, 'column', None)
    if not isinstance(line, int) or line < 1:
        return None, None
    return line, col


def parse_program(source: str) -> Program:
    """Parses flattened Shrimpl source text into a Program."""
    return ShrimplParser().parse(source)
