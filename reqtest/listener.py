"""HTTP listener that logs the size of every request body it receives."""

import http.server
import logging
import socket
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from reqtest.__version__ import __version__

logger = logging.getLogger("reqtest")

CHUNK_SIZE = 65536
# Longest chunk-size or trailer line accepted in a chunked body
MAX_LINE = 65536
DEFAULT_HISTORY_SIZE = 1000


def parse_listen_address(address: str) -> Tuple[str, int]:
    """Split a ``host:port`` listen address.

    ``:8080`` listens on all interfaces, ``[::1]:8080`` on an IPv6 literal.
    """
    host, sep, port_str = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"IPv6 address must be in brackets: {address!r}")
    if not port_str.isdigit():
        raise ValueError(f"invalid port {port_str!r} in address {address!r}")
    port = int(port_str)
    if port > 65535:
        raise ValueError(f"port {port} out of range in address {address!r}")
    return host, port


class BodyReadError(Exception):
    """Request body could not be read completely."""


class ListenerServer(http.server.ThreadingHTTPServer):
    """Threading HTTP server that knows which listener it reports to."""

    daemon_threads = True

    def __init__(self, server_address, handler_class, listener: "RequestListener"):
        self.listener = listener
        self.dual_stack = False
        host, port = server_address
        if not host and socket.has_dualstack_ipv6():
            # All interfaces: one IPv6 socket that also accepts IPv4
            self.address_family = socket.AF_INET6
            self.dual_stack = True
            server_address = ("::", port)
        elif ":" in host:
            self.address_family = socket.AF_INET6
        super().__init__(server_address, handler_class)

    def server_bind(self):
        if self.dual_stack:
            try:
                self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            except OSError as e:
                logger.debug(f"Could not enable dual-stack listening: {e}")
        super().server_bind()


class SizeLoggingHandler(http.server.BaseHTTPRequestHandler):
    """Reads every non-GET body and reports how many bytes arrived."""

    protocol_version = "HTTP/1.1"
    server_version = f"reqtest/{__version__}"

    _expect_continue = False

    def handle_expect_100(self):
        # Answer "100 Continue" only once the body is actually read,
        # so a response delay also holds back the client's upload.
        self._expect_continue = True
        return True

    def do_GET(self):
        try:
            self._read_body()
        except (BodyReadError, OSError):
            self.close_connection = True
        except ValueError:
            self.send_error(400, "Invalid Content-Length")
            return
        self._respond(200)

    def handle_upload(self):
        listener: RequestListener = self.server.listener
        started = time.monotonic()
        client = self.address_string()

        logger.info(f"received {self.command} request for {self.path} from {client}")
        if listener.resp_delay > 0:
            logger.info(f"waiting {listener.resp_delay:g}s before reading/responding...")
            time.sleep(listener.resp_delay)

        try:
            nbytes = self._read_body()
        except ValueError as e:
            logger.error(f"error reading body: {e}")
            listener.record(self.command, self.path, client, 0, 400, time.monotonic() - started)
            self.send_error(400, "Invalid Content-Length")
            return
        except (BodyReadError, OSError) as e:
            logger.error(f"error reading body: {e}")
            listener.record(self.command, self.path, client, 0, 500, time.monotonic() - started)
            self.close_connection = True
            self._respond(500)
            return

        logger.info(f"read {nbytes} bytes from body")
        listener.record(self.command, self.path, client, nbytes, 200, time.monotonic() - started)
        self._respond(200)

    do_PUT = handle_upload
    do_POST = handle_upload
    do_PATCH = handle_upload
    do_DELETE = handle_upload
    do_OPTIONS = handle_upload
    do_HEAD = handle_upload

    def _respond(self, status: int):
        try:
            self.send_response(status)
            self.send_header("Content-Length", "0")
            if self.close_connection:
                self.send_header("Connection", "close")
            self.end_headers()
        except OSError as e:
            logger.debug(f"Could not send response: {e}")
            self.close_connection = True

    def _read_body(self) -> int:
        """Consume the request body and return its size in bytes."""
        transfer_encoding = self.headers.get("Transfer-Encoding", "")
        if "chunked" in transfer_encoding.lower():
            self._send_continue()
            return self._read_chunked()

        length_header = self.headers.get("Content-Length")
        if length_header is None:
            self._expect_continue = False
            return 0
        length = int(length_header.strip())
        if length < 0:
            raise ValueError(f"negative Content-Length {length}")
        self._send_continue()
        return self._drain(length)

    def _send_continue(self):
        if self._expect_continue:
            self._expect_continue = False
            self.send_response_only(100)
            self.end_headers()

    def _drain(self, length: int) -> int:
        remaining = length
        while remaining > 0:
            chunk = self.rfile.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                raise BodyReadError(f"unexpected EOF, got {length - remaining} of {length} bytes")
            remaining -= len(chunk)
        return length

    def _read_line(self) -> bytes:
        line = self.rfile.readline(MAX_LINE + 1)
        if not line:
            raise BodyReadError("unexpected EOF in chunked body")
        if len(line) > MAX_LINE:
            raise BodyReadError("chunked body line too long")
        return line

    def _read_chunked(self) -> int:
        total = 0
        while True:
            size_field = self._read_line().split(b";", 1)[0].strip()
            try:
                size = int(size_field, 16)
            except ValueError:
                raise BodyReadError(f"invalid chunk size {size_field!r}") from None
            if size < 0:
                raise BodyReadError(f"invalid chunk size {size_field!r}")
            if size == 0:
                break
            total += self._drain(size)
            if self._read_line().strip():
                raise BodyReadError("missing CRLF after chunk data")

        # Trailers
        while self._read_line().strip():
            pass
        return total

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


class RequestListener:
    """Runs the HTTP listener and keeps statistics about what it received."""

    def __init__(self, address: str, resp_delay: float = 0.0, history_size: int = DEFAULT_HISTORY_SIZE):
        self.address = address
        self.host, self.port = parse_listen_address(address)
        self.resp_delay = resp_delay
        self.server: Optional[ListenerServer] = None
        self.serve_thread: Optional[threading.Thread] = None
        self.active = False

        self.requests_received = 0
        self.bytes_received = 0
        self.errors = 0
        self.history: Deque[Dict] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._next_id = 1

    @property
    def server_address(self) -> Tuple[str, int]:
        """The address actually bound (resolves port 0)."""
        if self.server is None:
            return self.host, self.port
        return self.server.server_address[:2]

    @property
    def url(self) -> str:
        host, port = self.server_address
        if not host or host in ("0.0.0.0", "::"):
            host = "localhost"
        elif ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{port}"

    def bind(self):
        """Create the server socket. Raises OSError if the address is unusable."""
        self.server = ListenerServer((self.host, self.port), SizeLoggingHandler, self)

    def run(self):
        """Serve in the foreground until interrupted."""
        self.bind()
        self.active = True
        logger.info(f"listening on {self.address}")
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("\nReceived interrupt signal, shutting down...")
        finally:
            self.stop()

    def start(self):
        """Serve from a background thread."""
        self.bind()
        self.active = True
        self.serve_thread = threading.Thread(
            target=self.server.serve_forever,
            daemon=True,
            name=f"Listener-{self.server_address[1]}",
        )
        self.serve_thread.start()
        logger.info(f"listening on {self.address}")

    def stop(self):
        """Stop serving and close the server socket."""
        self.active = False
        if self.server is None:
            return
        if self.serve_thread is not None:
            self.server.shutdown()
            self.serve_thread.join(timeout=5)
            self.serve_thread = None
        self.server.server_close()
        self.server = None

    def record(self, method: str, path: str, client: str, nbytes: int, status: int, elapsed: float):
        """Add a handled request to the statistics."""
        with self._lock:
            self.requests_received += 1
            self.bytes_received += nbytes
            if status != 200:
                self.errors += 1
            self.history.append({
                "id": self._next_id,
                "time": time.time(),
                "method": method,
                "path": path,
                "client": client,
                "bytes": nbytes,
                "status": status,
                "elapsed": elapsed,
            })
            self._next_id += 1

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                "requests_received": self.requests_received,
                "bytes_received": self.bytes_received,
                "errors": self.errors,
            }

    def recent_requests(self, limit: Optional[int] = None) -> List[Dict]:
        """Return handled requests, newest first."""
        with self._lock:
            entries = list(reversed(self.history))
        if limit is not None:
            entries = entries[:limit]
        return entries

    def clear_history(self):
        with self._lock:
            self.history.clear()
            self.requests_received = 0
            self.bytes_received = 0
            self.errors = 0

    def run_dashboard(self):
        """Serve in the background and show the interactive dashboard."""
        from reqtest.dashboard import LogHandler, run_dashboard

        reqtest_logger = logging.getLogger("reqtest")
        log_handler = LogHandler()
        log_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
        reqtest_logger.addHandler(log_handler)

        # Logs go to the dashboard panel instead of the console
        propagate = reqtest_logger.propagate
        reqtest_logger.propagate = False
        try:
            self.start()
            run_dashboard(self)
        except KeyboardInterrupt:
            logger.info("\nReceived interrupt signal, shutting down...")
        finally:
            reqtest_logger.propagate = propagate
            reqtest_logger.removeHandler(log_handler)
            self.stop()
