from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from shrimpl.shrimpl_config import EnvSecretResolver, ShrimplConfig, apply_server, load_config
from shrimpl.shrimpl_datatypes import Program, ShrimplRuntimeError, ShrimplSyntaxError
from shrimpl.shrimpl_interpreter import Environment, Evaluator
from shrimpl.shrimpl_loader import load_source, load_with_imports, split_lines
from shrimpl.shrimpl_parser import parse_program, source_context
from shrimpl.shrimpl_router import Router

# Name of the synthetic function that wraps an expression for `evaluate_source`.
_EVAL_FN = "__eval__"


def load_program(path: str | Path) -> Program:
    """Loads an entry file with its imports and parses it."""
    return parse_program(load_with_imports(path))


@dataclass
class ExecutionResult:
    """The structured result of evaluating one expression."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    line: Optional[int] = None
    stacktrace: Optional[str] = None

    def format_error(self) -> str:
        """Formats an error message with its line if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.line is not None and not msg.startswith("Error on line "):
            msg = f"Error on line {self.line}: {msg}"
        if self.stacktrace:
            msg += "\n" + self.stacktrace
        return msg


class ShrimplRunner:
    """Loads Shrimpl programs, builds routers and evaluates one-off expressions."""

    def __init__(self, config: Optional[ShrimplConfig] = None, secret_resolver=None):
        self.config = config or ShrimplConfig()
        self.secret_resolver = secret_resolver or EnvSecretResolver(fallback=self.config.secrets)

    @classmethod
    def for_entry(cls, entry: str | Path, env: Optional[str] = None) -> 'ShrimplRunner':
        """A runner configured from the config directory next to `entry`."""
        return cls(load_config(Path(entry).resolve().parent, env=env))

    def load(self, entry: str | Path) -> Program:
        return apply_server(load_program(entry), self.config)

    def load_text(self, source: str, base_dir: str | Path = ".") -> Program:
        return apply_server(parse_program(load_source(source, base_dir)), self.config)

    def router(self, program: Program) -> Router:
        return Router(program, self.secret_resolver, self.config)

    def evaluator(self, program: Program) -> Evaluator:
        return Evaluator(program, self.secret_resolver,
                         max_repeat=self.config.max_repeat,
                         max_call_depth=self.config.max_call_depth)

    async def evaluate_source(self, source: str, program: Optional[Program] = None,
                              bindings: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """Parses and evaluates a single expression against `program`'s declarations."""
        program = program or Program()
        if not source.strip():
            return ExecutionResult('error', error_message="Nothing to evaluate")
        wrapped = f"func {_EVAL_FN}():\n" + "".join(f"    {line}\n" for line in split_lines(source))
        try:
            body = parse_program(wrapped).functions[_EVAL_FN].body
        except ShrimplSyntaxError as e:
            # shift the position back onto the caller's text
            line = e.line - 1 if e.line and e.line > 1 else None
            col = max((e.col or 1) - 4, 1) if line else None
            err = ShrimplSyntaxError(e.message, line, col, source_context(source, line, col))
            return ExecutionResult('error', error_message=f"SyntaxError: {err}", line=line)

        evaluator = self.evaluator(program)
        try:
            value = await evaluator.eval(body, Environment(bindings))
        except ShrimplRuntimeError as e:
            # errors raised inside program functions carry program lines and a stacktrace
            line = e.line - 1 if e.stacktrace is None and e.line and e.line > 1 else None
            return ExecutionResult('error', error_message=e.message, line=line, stacktrace=e.stacktrace)
        return ExecutionResult('success', value=value)
