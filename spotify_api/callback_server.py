"""Single-use loopback listener that catches the Spotify OAuth redirect.

The listener binds 127.0.0.1 explicitly, polls a non-blocking socket for
connections and stops at the first callback that carries either ``code`` or
``error``. Anything else (favicon requests, browser prefetches, garbage) gets a
404 and the wait goes on until the deadline.
"""

import html
import logging
import socket
import time
import urllib.parse
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from .errors import SetupError, TransientConnectionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 0.1
MAX_REQUEST_HEAD = 16 * 1024
HEADER_TERMINATOR = b"\r\n\r\n"


@dataclass(frozen=True)
class CallbackCode:
    code: str
    state: Optional[str] = None


@dataclass(frozen=True)
class CallbackError:
    error: str
    description: Optional[str] = None
    state: Optional[str] = None


@dataclass(frozen=True)
class CallbackTimeout:
    pass


CallbackOutcome = Union[CallbackCode, CallbackError, CallbackTimeout]


@dataclass(frozen=True)
class CallbackRequest:
    method: str
    path: str
    params: Dict[str, str]


SUCCESS_PAGE = (
    "<html><head><meta charset=\"utf-8\"><title>Conduit Spotify</title></head><body>"
    "<h1>Success!</h1>"
    "<p>Spotify is connected. You can close this window and return to your terminal.</p>"
    "<script>setTimeout(() => window.close(), 3000);</script>"
    "</body></html>"
)

FAILURE_PAGE = (
    "<html><head><meta charset=\"utf-8\"><title>Conduit Spotify</title></head><body>"
    "<h1>Authorization Failed</h1>"
    "<p>Error: {error}</p>"
    "{details}"
    "<p>Please check your Spotify app settings and try again.</p>"
    "</body></html>"
)


def http_response(status: str, body: str = "") -> bytes:
    payload = body.encode("utf-8")
    head = (
        f"HTTP/1.1 {status}\r\n"
        "Content-Type: text/html; charset=UTF-8\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode("ascii") + payload


def success_response() -> bytes:
    return http_response("200 OK", SUCCESS_PAGE)


def failure_response(error: str, description: Optional[str] = None) -> bytes:
    details = f"<p>Details: {html.escape(description)}</p>" if description else ""
    return http_response("400 Bad Request", FAILURE_PAGE.format(error=html.escape(error), details=details))


def not_found_response() -> bytes:
    return http_response("404 Not Found")


def parse_request_head(raw: bytes) -> CallbackRequest:
    """Pull method, path and query parameters out of a raw HTTP request head."""

    try:
        text = raw.decode("iso-8859-1")
    except UnicodeDecodeError as e:
        raise TransientConnectionError(f"undecodable request: {e}") from e

    request_line = text.split("\r\n", 1)[0].strip()
    parts = request_line.split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise TransientConnectionError(f"malformed request line: {request_line[:200]!r}")

    method, target, _version = parts
    parsed = urllib.parse.urlsplit(target)
    params: Dict[str, str] = {}
    for key, value in urllib.parse.parse_qsl(parsed.query, keep_blank_values=True):
        # First occurrence wins, like the browser's own URLSearchParams.get().
        params.setdefault(key, value)

    return CallbackRequest(method=method.upper(), path=parsed.path or "/", params=params)


def classify_callback(request: CallbackRequest, callback_path: str = "/callback") -> Optional[CallbackOutcome]:
    """Return the outcome carried by a request, or None when it is just noise."""

    if request.method != "GET" or request.path != callback_path:
        return None

    state = request.params.get("state")
    if request.params.get("code"):
        return CallbackCode(code=request.params["code"], state=state)
    if request.params.get("error"):
        return CallbackError(
            error=request.params["error"],
            description=request.params.get("error_description") or None,
            state=state,
        )
    return None


class CallbackServer:
    """Loopback listener for exactly one OAuth redirect.

    Usage::

        with CallbackServer(8888) as server:
            outcome = server.wait(timeout=300)

    ``start()`` raises SetupError when the port can't be bound; ``wait()``
    always closes the listening socket before returning.
    """

    def __init__(
        self,
        port: int,
        *,
        host: str = "127.0.0.1",
        path: str = "/callback",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        read_timeout: float = 5.0,
        expected_state: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.port = int(port)
        self.host = host
        self.path = path
        self.poll_interval = float(poll_interval)
        self.read_timeout = float(read_timeout)
        self.expected_state = expected_state
        self._clock = clock
        self._sleep = sleep
        self._sock: Optional[socket.socket] = None
        self.state = "idle"

    @property
    def closed(self) -> bool:
        return self._sock is None

    def start(self) -> "CallbackServer":
        if self._sock is not None:
            return self

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(5)
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise SetupError(f"Failed to start callback server on {self.host}:{self.port}: {e}") from e

        self._sock = sock
        self.state = "listening"
        logger.info("Started temporary callback server on http://%s:%s%s", self.host, self.port, self.path)
        return self

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            logger.debug("Callback server on port %s closed", self.port)
        self.state = "closed"

    def __enter__(self) -> "CallbackServer":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def wait(self, timeout: float = DEFAULT_TIMEOUT) -> CallbackOutcome:
        """Poll for the redirect until a code/error arrives or ``timeout`` seconds pass."""

        if self._sock is None:
            self.start()

        deadline = self._clock() + float(timeout)
        try:
            while self._clock() < deadline:
                try:
                    conn, addr = self._sock.accept()
                except (BlockingIOError, InterruptedError):
                    self._sleep(self.poll_interval)
                    continue
                except OSError as e:
                    # e.g. a client that reset before accept(), or EMFILE
                    logger.warning("Ignoring failed accept on callback server: %s", e)
                    self._sleep(self.poll_interval)
                    continue

                with conn:
                    try:
                        outcome = self._handle_connection(conn)
                    except TransientConnectionError as e:
                        logger.warning("Ignoring bad callback connection from %s: %s", addr[0], e)
                        continue

                if outcome is not None:
                    return outcome

            self.state = "timed_out"
            logger.warning("No Spotify callback within %.0f seconds", float(timeout))
            return CallbackTimeout()
        finally:
            self.close()

    def _handle_connection(self, conn: socket.socket) -> Optional[CallbackOutcome]:
        conn.setblocking(True)
        conn.settimeout(self.read_timeout)

        request = parse_request_head(self._read_head(conn))
        outcome = classify_callback(request, self.path)

        if outcome is None:
            logger.debug("Ignoring %s %s on callback server", request.method, request.path)
            self._respond(conn, not_found_response())
            return None

        if isinstance(outcome, CallbackCode) and self.expected_state is not None:
            if outcome.state != self.expected_state:
                outcome = CallbackError(
                    error="state_mismatch",
                    description="The state returned by Spotify does not match this login attempt.",
                    state=outcome.state,
                )

        if isinstance(outcome, CallbackCode):
            self._respond(conn, success_response())
            logger.info("Authorization code received")
        else:
            self._respond(conn, failure_response(outcome.error, outcome.description))
            logger.error("Spotify authorization error: %s (%s)", outcome.error, outcome.description or "")
        return outcome

    @staticmethod
    def _read_head(conn: socket.socket) -> bytes:
        buf = b""
        while HEADER_TERMINATOR not in buf:
            try:
                chunk = conn.recv(1024)
            except OSError as e:
                raise TransientConnectionError(f"read failed: {e}") from e
            if not chunk:
                break
            buf += chunk
            if len(buf) > MAX_REQUEST_HEAD:
                raise TransientConnectionError("request head too large")

        if not buf:
            raise TransientConnectionError("connection closed before sending a request")
        return buf

    @staticmethod
    def _respond(conn: socket.socket, payload: bytes) -> None:
        try:
            conn.sendall(payload)
        except OSError as e:
            # The outcome is already known; a browser that hung up early doesn't change it.
            logger.debug("Could not write callback response: %s", e)


def await_callback(port: int, timeout: float = DEFAULT_TIMEOUT, **kwargs) -> CallbackOutcome:
    """Bind the listener on ``port`` and wait for one callback."""

    with CallbackServer(port, **kwargs) as server:
        return server.wait(timeout)
