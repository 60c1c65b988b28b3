"""
A small threaded HTTP/1.1 front end for the router.

Each connection is served on its own thread; the handler decodes the request,
runs `Router.handle` on a private event loop and writes the response.
"""

import asyncio
import ssl
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qsl, urlsplit

from shrimpl.shrimpl_config import ShrimplConfig
from shrimpl.shrimpl_router import Request, Response, Router

STATUS_CODES = {'success': 200, 'not-found': 404, 'error': 500}
CONTENT_TYPES = {'text': 'text/plain; charset=utf-8', 'json': 'application/json'}


class ShrimplRequestHandler(BaseHTTPRequestHandler):
    server_version = "Shrimpl/0.1"
    protocol_version = "HTTP/1.1"

    def do_GET(self):
        self._dispatch('GET')

    def do_POST(self):
        self._dispatch('POST')

    def _dispatch(self, method: str):
        parts = urlsplit(self.path)
        length = int(self.headers.get('Content-Length') or 0)
        payload = self.rfile.read(length) if length > 0 else b""
        request = Request(
            method=method,
            path=parts.path,
            payload=payload,
            query=dict(parse_qsl(parts.query, keep_blank_values=True)),
            headers={k.lower(): v for k, v in self.headers.items()},
            content_type=self.headers.get('Content-Type'),
        )
        response = asyncio.run(self.server.router.handle(request))
        self._send(response)

    def _send(self, response: Response):
        data = response.body.encode('utf-8')
        self.send_response(STATUS_CODES.get(response.status, 500))
        self.send_header('Content-Type', CONTENT_TYPES[response.content_type])
        self.send_header('Content-Length', str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        if not getattr(self.server, 'quiet', False):
            print(f"[shrimpl] {self.address_string()} {format % args}", file=sys.stderr)


class ShrimplHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, router: Router, *, quiet: bool = False):
        self.router = router
        self.quiet = quiet
        super().__init__(address, ShrimplRequestHandler)


def tls_context(config: ShrimplConfig) -> ssl.SSLContext:
    if not (config.tls_cert and config.tls_key):
        raise ValueError("TLS is enabled but tls.cert and tls.key are not configured")
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(config.tls_cert, config.tls_key)
    return ctx


def make_server(router: Router, host: str = "127.0.0.1", port: int = 3000, *,
                ssl_context: Optional[ssl.SSLContext] = None, quiet: bool = False) -> ShrimplHTTPServer:
    """Binds a server without starting it; port 0 picks a free port."""
    server = ShrimplHTTPServer((host, port), router, quiet=quiet)
    if ssl_context is not None:
        server.socket = ssl_context.wrap_socket(server.socket, server_side=True)
    return server


def serve(router: Router, config: Optional[ShrimplConfig] = None):
    """Serves the router's program until interrupted."""
    config = config or router.config
    server_decl = router.program.server
    ctx = tls_context(config) if server_decl.tls else None
    server = make_server(router, config.host, server_decl.port, ssl_context=ctx)
    scheme = "https" if ctx else "http"
    host, port = server.server_address[:2]
    print(f"Shrimpl server listening on {scheme}://{host}:{port}", file=sys.stderr)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("Shutting down.", file=sys.stderr)
    finally:
        server.server_close()
