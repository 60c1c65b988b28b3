import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from shrimpl.shrimpl_checker import build_diagnostics, build_schema
from shrimpl.shrimpl_datatypes import ShrimplConfigError, ShrimplLoadError, ShrimplSyntaxError
from shrimpl.shrimpl_http import serve
from shrimpl.shrimpl_printer import Printer
from shrimpl.shrimpl_runtime import ShrimplRunner

COMMANDS = ("run", "check", "schema", "diagnostics", "eval")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shrimpl", description="Shrimpl language CLI")
    parser.add_argument("-f", "--file", default="app.shr",
                        help="path to the main Shrimpl file (default: app.shr)")
    parser.add_argument("--env", default=None,
                        help="config environment (default: $SHRIMPL_ENV or 'dev')")
    parser.add_argument("--format", choices=("json", "yaml"), default="json",
                        help="output format for schema and diagnostics")
    parser.add_argument("command", nargs="?", choices=COMMANDS, default="run")
    parser.add_argument("expr", nargs="?", help="expression for the eval command")
    return parser


def _dump(data, fmt: str) -> str:
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True).rstrip("\n")
    return json.dumps(data, indent=2, ensure_ascii=False)


def _fail(message: str):
    print(f"Error: {message}", file=sys.stderr)
    raise SystemExit(1)


def print_banner(program):
    scheme = "https" if program.server.tls else "http"
    port = program.server.port
    print()
    print("shrimpl run")
    print("----------------------------------------")
    print(f"Shrimpl server is starting on {scheme}://localhost:{port}")
    for endpoint in program.endpoints:
        print(f"  • {endpoint.method.value} {scheme}://localhost:{port}{endpoint.path}")
    print()
    print("Press Ctrl+C to shut down the server.")
    print("----------------------------------------")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    if args.command == "eval" and not args.expr:
        _fail("eval needs an expression")

    entry = Path(args.file)
    try:
        runner = ShrimplRunner.for_entry(entry, env=args.env)
        program = runner.load(entry)
    except ShrimplLoadError as e:
        _fail(str(e))
    except ShrimplSyntaxError as e:
        _fail(f"Parse error in {entry}: {e}")
    except ShrimplConfigError as e:
        _fail(f"Invalid config: {e}")

    match args.command:
        case "check":
            print(f"OK: {entry}")
            for diag in build_diagnostics(program):
                line = diag.location.get("line") if diag.location else None
                where = f" (line {line})" if line else ""
                print(f"{diag.severity}: {diag.message}{where}")
        case "schema":
            print(_dump(build_schema(program), args.format))
        case "diagnostics":
            print(_dump([d.to_dict() for d in build_diagnostics(program)], args.format))
        case "eval":
            result = asyncio.run(runner.evaluate_source(args.expr, program))
            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                return 1
            print(Printer().pformat(result.value))
        case "run":
            print_banner(program)
            try:
                serve(runner.router(program), runner.config)
            except (OSError, ValueError) as e:
                _fail(f"Cannot start server: {e}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
