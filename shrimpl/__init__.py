__version__ = "0.1.0"

from shrimpl.shrimpl_checker import build_diagnostics, build_schema
from shrimpl.shrimpl_parser import parse_program
from shrimpl.shrimpl_router import Request, Response, Router
from shrimpl.shrimpl_runtime import ExecutionResult, ShrimplRunner, load_program
