"""HTTP(S) listener and dispatch gate.

Every request passes through the same gate before any resource handler
runs: CORS preflight short-circuit, security/CORS headers, route lookup,
and Basic authentication when credentials are configured. The events
route is either served by its handler or upgraded to a websocket push
channel, depending on configuration.
"""

import logging
import socket
import ssl
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from restapi.auth import REALM, check_credentials
from restapi.config import ServiceConfig
from restapi.resources import Request, Response
from restapi.routes import EVENTS, RouteTable
from restapi.session import EventPool
from restapi.websocket import EventChannel, accept_value, is_upgrade_request

logger = logging.getLogger(__name__)

ALLOW_HEADERS = "Accept, Content-Type, Content-Length, Accept-Encoding, X-CSRF-Token, Authorization"
ALLOW_METHODS = "POST, GET, OPTIONS, PUT, DELETE"
TLS_HANDSHAKE_TIMEOUT = 30.0
MAX_BODY = 64 * 1024 * 1024


class RequestHandler(BaseHTTPRequestHandler):
    """Request handler applying the dispatch gate."""

    server: "APIServer"
    protocol_version = "HTTP/1.1"
    server_version = "restapi"

    def setup(self):
        if isinstance(self.request, ssl.SSLSocket):
            self.request.settimeout(TLS_HANDSHAKE_TIMEOUT)
            self.request.do_handshake()
            self.request.settimeout(None)
        super().setup()

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def send_security_headers(self):
        config = self.server.config
        self.send_header("X-Frame-Options", "DENY")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("X-XSS-Protection", "1; mode=block")
        self.send_header("Referrer-Policy", "same-origin")
        self.send_header("Access-Control-Allow-Origin", config.allow_origin)
        self.send_header("Access-Control-Allow-Headers", ALLOW_HEADERS)
        self.send_header("Access-Control-Allow-Methods", ALLOW_METHODS)

    def send(self, response: Response):
        """Send a Response and close the connection afterwards."""
        self.send_response(response.status)
        self.send_security_headers()
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Type", response.content_type)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.close_connection = True
        if self.command != "HEAD" and response.body:
            self.wfile.write(response.body)

    def do_OPTIONS(self):
        """CORS preflight: answered here, never routed."""
        self.send_response(HTTPStatus.NO_CONTENT)
        self.send_security_headers()
        self.send_header("Content-Length", "0")
        self.send_header("Connection", "close")
        self.end_headers()
        self.close_connection = True

    def do_GET(self):
        self.dispatch()

    def do_HEAD(self):
        self.dispatch()

    def do_POST(self):
        self.dispatch()

    def do_PUT(self):
        self.dispatch()

    def do_DELETE(self):
        self.dispatch()

    def do_PATCH(self):
        self.dispatch()

    def dispatch(self):
        parsed = urlparse(self.path)
        match = self.server.routes.match(parsed.path)
        if match is None:
            self.send(Response.error("E100", f"Unknown endpoint: {parsed.path}", 404))
            return

        config = self.server.config
        if error := check_credentials(self.headers.get("Authorization"), config.username, config.password):
            logger.debug("Rejected %s %s: %s", self.command, parsed.path, error.message)
            response = Response.error(error.code, error.message, error.http_status)
            response.headers["WWW-Authenticate"] = f'Basic realm="{REALM}"'
            self.send(response)
            return

        if match.resource == EVENTS and config.use_websocket:
            self.stream_events()
            return

        body = self._read_body()
        if body is None:
            return

        request = Request(
            method=self.command,
            path=parsed.path,
            query=parse_qs(parsed.query),
            params=match.params,
            section=match.section,
            headers=dict(self.headers.items()),
            body=body,
        )
        try:
            response = self.server.resources.handle(match.resource, request)
        except Exception:
            logger.exception("Handler for %s failed", parsed.path)
            response = Response.error("E500", "Internal server error", 500)
        self.send(response)

    def _read_body(self) -> Optional[bytes]:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            self.send(Response.error("E101", "Invalid Content-Length", 400))
            return None
        if length > MAX_BODY:
            self.send(Response.error("E101", "Request body too large", 413))
            return None
        if length <= 0:
            return b""
        return self.rfile.read(length)

    def stream_events(self):
        """Upgrade the connection to the events push channel."""
        ws_key = (self.headers.get("Sec-WebSocket-Key") or "").strip()
        if not is_upgrade_request(self.headers) or not ws_key:
            self.send(Response.error("E101", "Expected a websocket upgrade request", 400))
            return

        self.send_response(HTTPStatus.SWITCHING_PROTOCOLS)
        self.send_security_headers()
        self.send_header("Upgrade", "websocket")
        self.send_header("Connection", "Upgrade")
        self.send_header("Sec-WebSocket-Accept", accept_value(ws_key))
        self.end_headers()
        self.wfile.flush()
        self.close_connection = True

        logger.info("Websocket client connected: %s", self.address_string())
        EventChannel(self.connection, self.server.events, self.server.quit).run()
        logger.info("Websocket client disconnected: %s", self.address_string())


class APIServer(ThreadingHTTPServer):
    """Threaded listener that tracks open connections.

    Tracking lets a stop wait for in-flight requests and forcibly close
    whatever is still open after the grace period.
    """

    daemon_threads = True
    block_on_close = False
    allow_reuse_address = True

    def __init__(
        self,
        config: ServiceConfig,
        routes: RouteTable,
        resources,
        events: EventPool,
        quit: threading.Event,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.config = config
        self.routes = routes
        self.resources = resources
        self.events = events
        self.quit = quit
        self.ssl_context = ssl_context
        # request -> ident of the thread serving it (None until started)
        self._active: dict = {}
        self._cond = threading.Condition()
        super().__init__((config.address, config.port), RequestHandler)

    @property
    def scheme(self) -> str:
        return "https" if self.ssl_context else "http"

    def get_request(self):
        sock, addr = self.socket.accept()
        if self.ssl_context is not None:
            # Handshake runs in the connection thread, not the accept loop
            sock = self.ssl_context.wrap_socket(
                sock, server_side=True, do_handshake_on_connect=False
            )
        return sock, addr

    def process_request(self, request, client_address):
        with self._cond:
            self._active[request] = None
        try:
            super().process_request(request, client_address)
        except Exception:
            self._release(request)
            raise

    def process_request_thread(self, request, client_address):
        with self._cond:
            self._active[request] = threading.get_ident()
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._release(request)

    def _release(self, request):
        with self._cond:
            self._active.pop(request, None)
            self._cond.notify_all()

    def handle_error(self, request, client_address):
        logger.debug("Error handling request from %s", client_address, exc_info=True)

    def active_connections(self) -> int:
        with self._cond:
            return len(self._active)

    def _others(self) -> list:
        # A stop issued from inside a request must not wait on itself
        current = threading.get_ident()
        return [req for req, ident in self._active.items() if ident != current]

    def wait_idle(self, timeout: float) -> bool:
        """Wait until no other connection is open. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._others(), timeout)

    def close_connections(self) -> int:
        """Forcibly close every other open connection."""
        with self._cond:
            remaining = self._others()
        for sock in remaining:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        return len(remaining)


def create_server(
    config: ServiceConfig,
    routes: RouteTable,
    resources,
    events: EventPool,
    quit: threading.Event,
    ssl_context: Optional[ssl.SSLContext] = None,
) -> APIServer:
    """Bind a listener for the configuration.

    Raises:
        OSError: If the address can't be bound
    """
    return APIServer(
        config=config,
        routes=routes,
        resources=resources,
        events=events,
        quit=quit,
        ssl_context=ssl_context,
    )
