"""
Maps HTTP requests to endpoint declarations and evaluates their bodies.

The router is transport-agnostic: it consumes a `Request` and produces a
`Response`. Each request gets its own Evaluator and Environment, so
concurrent requests share nothing but the immutable Program.
"""

import os
import sys
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Tuple

from shrimpl.shrimpl_config import ShrimplConfig
from shrimpl.shrimpl_datatypes import (
    EndpointDecl, JsonRaw, Method, Program, ShrimplRuntimeError, to_value,
)
from shrimpl.shrimpl_interpreter import Environment, Evaluator, SecretResolver
from shrimpl.shrimpl_serialize import deserialize, serialize

RESERVED_BINDINGS = ("method", "path", "query", "body", "headers")


@dataclass(frozen=True)
class Request:
    method: str
    path: str
    payload: Any = None          # bytes/str from the wire, or already decoded data
    query: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None


@dataclass(frozen=True)
class Response:
    status: Literal['success', 'error', 'not-found']
    content_type: Literal['text', 'json']
    body: str

    @property
    def ok(self) -> bool:
        return self.status == 'success'


def _dbg(*parts):
    if os.environ.get("SHRIMPL_DEBUG"):
        print("[DBG]", *parts, file=sys.stderr)


def error_response(message: str, status: str = 'error') -> Response:
    return Response(status, 'json', serialize({"error": message}))


def render(value: Any) -> Response:
    """Text is served as text; every other value is serialized as JSON."""
    if isinstance(value, str):
        return Response('success', 'text', value)
    return Response('success', 'json', serialize(value))


class Router:
    """Dispatches requests to the endpoints of one Program."""

    def __init__(self, program: Program, secret_resolver: Optional[SecretResolver] = None,
                 config: Optional[ShrimplConfig] = None):
        self.program = program
        self.secret_resolver = secret_resolver
        self.config = config or ShrimplConfig()
        self._routes: Dict[Tuple[Method, str], EndpointDecl] = {}
        for endpoint in program.endpoints:
            # first declaration wins
            self._routes.setdefault((endpoint.method, endpoint.path), endpoint)

    def match(self, method: str | Method, path: str) -> Optional[EndpointDecl]:
        """Exact (method, path) lookup."""
        if not isinstance(method, Method):
            try:
                method = Method(str(method).upper())
            except ValueError:
                return None
        return self._routes.get((method, path))

    def request_env(self, request: Request) -> Environment:
        """Builds the variable bindings visible to an endpoint body."""
        query = {str(k): str(v) for k, v in request.query.items()}
        headers = {str(k).lower(): str(v) for k, v in request.headers.items()}
        body = self._decode_payload(request)

        bindings: Dict[str, Any] = dict(query)
        if isinstance(body, dict):
            bindings.update(body)
        bindings.update({
            'method': request.method.upper(),
            'path': request.path,
            'query': query,
            'body': body,
            'headers': headers,
        })
        return Environment(bindings)

    def _decode_payload(self, request: Request) -> Any:
        payload = request.payload
        if payload is None or payload == b"" or payload == "":
            return ""
        if isinstance(payload, (bytes, bytearray, str)):
            payload = deserialize(payload, content_type=request.content_type)
        return to_value(payload)

    def evaluator(self) -> Evaluator:
        return Evaluator(
            self.program, self.secret_resolver,
            max_repeat=self.config.max_repeat,
            max_call_depth=self.config.max_call_depth,
        )

    async def handle(self, request: Request) -> Response:
        """Evaluates the matching endpoint. Never raises."""
        endpoint = self.match(request.method, request.path)
        if endpoint is None:
            _dbg("ROUTE", request.method, request.path, "-> not found")
            return error_response(f"Not found: {request.method.upper()} {request.path}", 'not-found')

        if isinstance(endpoint.body, JsonRaw):
            return Response('success', 'json', endpoint.body.text)

        try:
            env = self.request_env(request)
            value = await self.evaluator().eval(endpoint.body.expr, env)
        except ShrimplRuntimeError as e:
            _dbg("ERROR", request.method, request.path, e.message, e.stacktrace or "")
            return error_response(e.message)
        except Exception as e:
            # a bug in the runtime must not take the server down
            print(f"Internal error in {request.method.upper()} {request.path}: {e}", file=sys.stderr)
            if os.environ.get("SHRIMPL_DEBUG"):
                traceback.print_exc(file=sys.stderr)
            return error_response(f"Internal error: {e}")
        return render(value)
