"""Callback HTTP(S) server.

Serves the endpoints custom providers and operators talk to:

    POST /callback     resolve a pending provider request
    GET  /callbacks    list pending requests (admin token)
    GET  /health       liveness
"""

import json
import logging
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from engine.gateway import CustomProviderGateway
from server.callbacks import MAX_BODY_BYTES, handle_callback_request, handle_callbacks_list

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_PORT = 44480
DEFAULT_BIND = "127.0.0.1"


class CallbackHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the callback server."""

    # Class-level state, bound per server by Server.start()
    gateway: Optional[CustomProviderGateway] = None
    admin_token: str = ""

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def send_json(self, data: dict, status: int = 200):
        """Send JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        """Handle GET requests."""
        path = urlparse(self.path).path.rstrip("/")

        if path == "/health":
            self.send_json({"status": "ok"})
            return

        if path == "/callbacks":
            if not self.gateway:
                self.send_json({"error": {"code": "E500", "message": "Gateway not initialized"}}, 500)
                return
            auth_header = self.headers.get("Authorization", "")
            response, status = handle_callbacks_list(auth_header, self.admin_token, self.gateway)
            self.send_json(response, status)
            return

        self.send_json({"error": {"code": "E324", "message": f"Unknown endpoint: {path}"}}, 404)

    def do_POST(self):
        """Handle POST requests."""
        path = urlparse(self.path).path.rstrip("/")
        if path != "/callback":
            self.send_json({"error": {"code": "E324", "message": f"Unknown endpoint: {path}"}}, 404)
            return
        if not self.gateway:
            self.send_json({"error": {"code": "E500", "message": "Gateway not initialized"}}, 500)
            return

        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            self.send_json({"error": {"code": "E320", "message": "Invalid Content-Length"}}, 400)
            return

        body = self.rfile.read(length)
        auth_header = self.headers.get("Authorization", "")
        response, status = handle_callback_request(body, auth_header, self.gateway)
        self.send_json(response, status)


class Server:
    """Callback server bound to one gateway."""

    def __init__(
        self,
        gateway: CustomProviderGateway,
        bind: str = DEFAULT_BIND,
        port: int = DEFAULT_PORT,
        cert: Optional[Path] = None,
        key: Optional[Path] = None,
        admin_token: str = "",
    ):
        """Initialize server.

        Args:
            gateway: Gateway resolving inbound callbacks
            bind: Address to bind to
            port: Port to listen on (0 picks a free port)
            cert: TLS certificate (plain HTTP when None)
            key: TLS private key
            admin_token: Token for /callbacks (disabled when empty)
        """
        self.gateway = gateway
        self.bind = bind
        self.port = port
        self.cert = cert
        self.key = key
        self.admin_token = admin_token
        self.server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        scheme = "https" if self.cert else "http"
        return f"{scheme}://{self.bind}:{self.port}"

    def start(self):
        """Bind the socket.

        Raises:
            RuntimeError: If server cannot be started
        """
        handler = type("BoundCallbackHandler", (CallbackHandler,), {
            "gateway": self.gateway,
            "admin_token": self.admin_token,
        })
        try:
            self.server = ThreadingHTTPServer((self.bind, self.port), handler)
        except OSError as e:
            raise RuntimeError(f"Cannot bind {self.bind}:{self.port}: {e}") from e
        self.server.daemon_threads = True
        self.port = self.server.server_address[1]

        if self.cert and self.key:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            try:
                context.load_cert_chain(certfile=str(self.cert), keyfile=str(self.key))
            except (OSError, ssl.SSLError) as e:
                self.server.server_close()
                self.server = None
                raise RuntimeError(f"TLS init failed: {e}") from e
            self.server.socket = context.wrap_socket(self.server.socket, server_side=True)

        logger.info("Callback server listening on %s", self.url)

    def serve_forever(self):
        """Serve requests on the calling thread."""
        if not self.server:
            raise RuntimeError("Server not started")

        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.shutdown()

    def serve_in_background(self):
        """Start (if needed) and serve on a daemon thread."""
        if not self.server:
            self.start()
        self._thread = threading.Thread(
            target=self.server.serve_forever, name="callback-server", daemon=True)
        self._thread.start()

    def shutdown(self):
        """Shutdown the server."""
        if self.server:
            logger.info("Shutting down callback server")
            if self._thread is not None:
                self.server.shutdown()
                self._thread.join(timeout=5)
                self._thread = None
            self.server.server_close()
            self.server = None


class ServerManager:
    """Reference-counted lifecycle of a background callback server.

    Nested users (an apply that rolls back, a destroy inside recover) only
    start and stop the server once.
    """

    def __init__(self, server: Server):
        self.server = server
        self._refs = 0
        self._lock = threading.Lock()

    def ensure(self) -> None:
        with self._lock:
            self._refs += 1
            if self._refs > 1:
                return
            try:
                self.server.serve_in_background()
            except RuntimeError:
                self._refs = 0
                raise

    def stop(self) -> None:
        with self._lock:
            if self._refs == 0:
                return
            self._refs -= 1
            if self._refs == 0:
                self.server.shutdown()
