import json
import socket
import sys
import tempfile
import unittest
import urllib.parse
from pathlib import Path

import httpx

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from spotify_api.callback_server import CallbackServer
from spotify_api.authorizer import (
    Authenticated,
    AuthSettings,
    Failed,
    SpotifyAuthorizer,
    TimedOut,
    authorize,
    logout,
    unwrap,
)
from spotify_api.errors import (
    AuthTimeoutError,
    ExchangeError,
    ProviderError,
    SetupError,
    SpotifyAuthError,
)
from spotify_api.token_manager import TokenManager, TokenSet


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class FakeBrowser:
    """Plays the part of the browser: follows the redirect Spotify would send."""

    def __init__(self, query=None, use_url_state=True):
        self.query = query or {"code": "AUTH_CODE"}
        self.use_url_state = use_url_state
        self.opened = []
        self.sockets = []

    def __call__(self, url):
        self.opened.append(url)
        params = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(url).query))
        redirect = urllib.parse.urlsplit(params["redirect_uri"])

        query = dict(self.query)
        if self.use_url_state:
            query.setdefault("state", params["state"])
        target = f"{redirect.path}?{urllib.parse.urlencode(query)}"

        sock = socket.create_connection((redirect.hostname, redirect.port), timeout=5)
        sock.sendall(f"GET {target} HTTP/1.1\r\nHost: {redirect.netloc}\r\n\r\n".encode())
        self.sockets.append(sock)
        return True

    def close(self):
        for sock in self.sockets:
            sock.close()


class AbortFirstAcceptServer(CallbackServer):
    """Listener whose first accept() fails the way a reset client does on BSD/macOS."""

    aborts = 0

    def start(self):
        super().start()
        if not isinstance(self._sock, _AcceptOnce):
            self._sock = _AcceptOnce(self._sock, self)
        return self


class _AcceptOnce:
    def __init__(self, sock, owner):
        self._sock = sock
        self._owner = owner

    def accept(self):
        if self._owner.aborts == 0:
            self._owner.aborts += 1
            raise ConnectionAbortedError(103, "Software caused connection abort")
        return self._sock.accept()

    def __getattr__(self, name):
        return getattr(self._sock, name)


class AuthorizerTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.token_path = Path(self._tmp.name) / "spotify_token.json"
        self.token_manager = TokenManager(str(self.token_path))
        self.port = _free_port()
        self.token_requests = []
        self.browser = FakeBrowser()

    def tearDown(self):
        self.browser.close()
        self._tmp.cleanup()

    def _token_handler(self, status=200, payload=None):
        payload = payload if payload is not None else {
            "access_token": "ACCESS",
            "token_type": "Bearer",
            "expires_in": 3600,
            "refresh_token": "REFRESH",
            "scope": "streaming",
        }

        def handler(request: httpx.Request) -> httpx.Response:
            self.token_requests.append(dict(urllib.parse.parse_qsl(request.content.decode())))
            return httpx.Response(status, json=payload)

        return handler

    def _authorizer(self, handler=None, settings=None, **kwargs):
        kwargs.setdefault("browser_opener", self.browser)
        kwargs.setdefault("port_selector", lambda *a, **kw: self.port)
        return SpotifyAuthorizer(
            settings or AuthSettings(callback_timeout=5, poll_interval=0.01),
            token_manager=self.token_manager,
            http_client=httpx.Client(transport=httpx.MockTransport(handler or self._token_handler())),
            **kwargs,
        )


class TestAuthorizeFlow(AuthorizerTestCase):
    def test_successful_login_saves_tokens(self):
        announced = []
        authorizer = self._authorizer(on_listening=lambda req, url: announced.append((req, url)))

        result = authorizer.authorize("cid", "secret", ["streaming"])

        self.assertIsInstance(result, Authenticated)
        self.assertEqual(result.token.access_token, "ACCESS")
        self.assertEqual(result.token.refresh_token, "REFRESH")

        redirect_uri = f"http://127.0.0.1:{self.port}/callback"
        self.assertEqual(
            self.token_requests,
            [{
                "grant_type": "authorization_code",
                "code": "AUTH_CODE",
                "redirect_uri": redirect_uri,
                "client_id": "cid",
                "client_secret": "secret",
            }],
        )

        saved = json.loads(self.token_path.read_text())
        self.assertEqual(saved["access_token"], "ACCESS")
        self.assertEqual(self.token_manager.load().access_token, "ACCESS")

        request, url = announced[0]
        self.assertEqual(request.redirect_uri, redirect_uri)
        self.assertEqual(request.scopes, ("streaming",))
        self.assertEqual(url, self.browser.opened[0])

    def test_listener_released_after_login(self):
        self._authorizer().authorize("cid", "secret")
        # SO_REUSEADDR skips TIME_WAIT leftovers but still fails against a live listener.
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind(("127.0.0.1", self.port))
            s.listen(1)

    def test_browser_page_reports_success(self):
        self._authorizer().authorize("cid", "secret")
        response = self.browser.sockets[0].recv(4096)
        self.assertTrue(response.startswith(b"HTTP/1.1 200 OK"))

    def test_missing_credentials(self):
        authorizer = self._authorizer()
        result = authorizer.authorize("", "secret")
        self.assertIsInstance(result, Failed)
        self.assertIn("Missing Spotify credentials", result.reason)
        self.assertEqual(self.browser.opened, [])
        self.assertEqual(self.token_requests, [])

    def test_no_free_port(self):
        def no_port(*args, **kwargs):
            raise SetupError("No free port available for the callback server")

        result = self._authorizer(port_selector=no_port).authorize("cid", "secret")
        self.assertIsInstance(result, Failed)
        self.assertIsInstance(result.error, SetupError)
        self.assertEqual(self.browser.opened, [])

    def test_bind_failure(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", self.port))
        blocker.listen(1)
        try:
            result = self._authorizer().authorize("cid", "secret")
        finally:
            blocker.close()
        self.assertIsInstance(result, Failed)
        self.assertIsInstance(result.error, SetupError)
        self.assertIn("callback server", result.reason)
        self.assertEqual(self.browser.opened, [])

    def test_timeout(self):
        settings = AuthSettings(callback_timeout=0.2, poll_interval=0.01)
        result = self._authorizer(settings=settings, browser_opener=lambda url: True).authorize("cid", "secret")
        self.assertEqual(result, TimedOut(redirect_uri=f"http://127.0.0.1:{self.port}/callback"))
        self.assertEqual(self.token_requests, [])
        self.assertFalse(self.token_path.exists())

    def test_provider_error(self):
        self.browser.query = {"error": "access_denied", "error_description": "User denied"}
        result = self._authorizer().authorize("cid", "secret")
        self.assertIsInstance(result, Failed)
        self.assertIsInstance(result.error, ProviderError)
        self.assertEqual(result.error.error, "access_denied")
        self.assertEqual(result.error.description, "User denied")
        self.assertEqual(self.token_requests, [])

    def test_exchange_rejected(self):
        handler = self._token_handler(400, {"error": "invalid_grant"})
        result = self._authorizer(handler).authorize("cid", "secret")
        self.assertIsInstance(result, Failed)
        self.assertIsInstance(result.error, ExchangeError)
        self.assertEqual(result.error.status_code, 400)
        self.assertIn("invalid_grant", result.error.body)
        self.assertEqual(len(self.token_requests), 1)
        self.assertFalse(self.token_path.exists())

    def test_state_mismatch_rejected(self):
        self.browser.query = {"code": "AUTH_CODE", "state": "forged"}
        result = self._authorizer().authorize("cid", "secret")
        self.assertIsInstance(result, Failed)
        self.assertIsInstance(result.error, ProviderError)
        self.assertEqual(result.error.error, "state_mismatch")
        self.assertEqual(self.token_requests, [])

    def test_state_check_can_be_disabled(self):
        self.browser.query = {"code": "AUTH_CODE", "state": "forged"}
        settings = AuthSettings(callback_timeout=5, poll_interval=0.01, validate_state=False)
        result = self._authorizer(settings=settings).authorize("cid", "secret")
        self.assertIsInstance(result, Authenticated)

    def test_browser_failure_still_waits(self):
        def broken_browser(url):
            raise RuntimeError("no display")

        settings = AuthSettings(callback_timeout=0.2, poll_interval=0.01)
        result = self._authorizer(settings=settings, browser_opener=broken_browser).authorize("cid", "secret")
        self.assertIsInstance(result, TimedOut)

    def test_failed_accept_still_authenticates(self):
        server = {}

        def factory(*args, **kwargs):
            server["instance"] = AbortFirstAcceptServer(*args, **kwargs)
            return server["instance"]

        result = self._authorizer(server_factory=factory).authorize("cid", "secret")
        self.assertIsInstance(result, Authenticated)
        self.assertEqual(server["instance"].aborts, 1)

    def test_malformed_token_response_is_failed(self):
        handler = self._token_handler(200, {"access_token": "A", "expires_in": "soon"})
        result = self._authorizer(handler).authorize("cid", "secret")
        self.assertIsInstance(result, Failed)
        self.assertIsInstance(result.error, ExchangeError)
        self.assertFalse(self.token_path.exists())

    def test_failing_listening_hook_is_not_fatal(self):
        def broken_hook(request, url):
            raise RuntimeError("terminal went away")

        result = self._authorizer(on_listening=broken_hook).authorize("cid", "secret")
        self.assertIsInstance(result, Authenticated)
        self.assertEqual(len(self.browser.opened), 1)

    def test_open_browser_disabled(self):
        settings = AuthSettings(callback_timeout=0.2, poll_interval=0.01, open_browser=False)
        self._authorizer(settings=settings).authorize("cid", "secret")
        self.assertEqual(self.browser.opened, [])

    def test_module_level_authorize(self):
        result = authorize(
            "cid",
            "secret",
            settings=AuthSettings(callback_timeout=5, poll_interval=0.01),
            token_manager=self.token_manager,
            http_client=httpx.Client(transport=httpx.MockTransport(self._token_handler())),
            browser_opener=self.browser,
            port_selector=lambda *a, **kw: self.port,
        )
        self.assertIsInstance(result, Authenticated)


class TestSettings(unittest.TestCase):
    def test_from_config(self):
        settings = AuthSettings.from_config({
            "spotify_port_candidates": [7777, 7778],
            "spotify_fallback_port_range": [10000, 10010],
            "spotify_callback_timeout": 60,
            "spotify_validate_state": False,
            "spotify_token_path": "/tmp/t.json",
        })
        self.assertEqual(settings.port_candidates, (7777, 7778))
        self.assertEqual(settings.fallback_port_range, (10000, 10010))
        self.assertEqual(settings.callback_timeout, 60.0)
        self.assertFalse(settings.validate_state)
        self.assertTrue(settings.open_browser)
        self.assertEqual(settings.token_path, "/tmp/t.json")

    def test_defaults(self):
        settings = AuthSettings.from_config({})
        self.assertEqual(settings.port_candidates, (8888, 8889, 8890, 8891, 8892))
        self.assertEqual(settings.fallback_port_range, (9000, 9999))
        self.assertEqual(settings.callback_timeout, 300.0)
        self.assertTrue(settings.validate_state)


class TestUnwrapAndLogout(unittest.TestCase):
    def test_unwrap(self):
        token = TokenSet(access_token="a")
        self.assertIs(unwrap(Authenticated(token)), token)

        with self.assertRaises(AuthTimeoutError):
            unwrap(TimedOut("http://127.0.0.1:8888/callback"))

        with self.assertRaises(ProviderError):
            unwrap(Failed("denied", ProviderError("access_denied")))

        with self.assertRaises(SpotifyAuthError):
            unwrap(Failed("Missing Spotify credentials"))

    def test_logout(self):
        with tempfile.TemporaryDirectory() as tmp:
            tm = TokenManager(str(Path(tmp) / "token.json"))
            tm.save(TokenSet(access_token="a"))
            self.assertTrue(logout(tm))
            self.assertFalse(tm.exists())
            self.assertFalse(logout(tm))


if __name__ == "__main__":
    unittest.main(verbosity=2)
