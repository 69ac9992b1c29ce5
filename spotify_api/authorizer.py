import logging
import webbrowser
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

import httpx

from .auth import (
    CALLBACK_PATH,
    DEFAULT_SCOPES,
    build_auth_url,
    build_redirect_uri,
    exchange_code,
    generate_state,
    normalize_scopes,
)
from .callback_server import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT,
    CallbackCode,
    CallbackError,
    CallbackServer,
    CallbackTimeout,
)
from .errors import AuthTimeoutError, ExchangeError, ProviderError, SetupError, SpotifyAuthError
from .ports import DEFAULT_PORT_CANDIDATES, FALLBACK_PORT_RANGE, LOOPBACK_HOST, select_port
from .token_manager import DEFAULT_TOKEN_PATH, TokenManager, TokenSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthSettings:
    """Everything the login flow needs besides the client credentials."""

    port_candidates: Tuple[int, ...] = DEFAULT_PORT_CANDIDATES
    fallback_port_range: Tuple[int, int] = FALLBACK_PORT_RANGE
    host: str = LOOPBACK_HOST
    callback_path: str = CALLBACK_PATH
    callback_timeout: float = DEFAULT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    validate_state: bool = True
    open_browser: bool = True
    token_path: str = DEFAULT_TOKEN_PATH

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "AuthSettings":
        config = config or {}
        fallback = config.get("spotify_fallback_port_range") or FALLBACK_PORT_RANGE
        return cls(
            port_candidates=tuple(int(p) for p in (config.get("spotify_port_candidates") or DEFAULT_PORT_CANDIDATES)),
            fallback_port_range=(int(fallback[0]), int(fallback[1])),
            callback_timeout=float(config.get("spotify_callback_timeout", DEFAULT_TIMEOUT)),
            poll_interval=float(config.get("spotify_poll_interval", DEFAULT_POLL_INTERVAL)),
            validate_state=bool(config.get("spotify_validate_state", True)),
            open_browser=bool(config.get("spotify_open_browser", True)),
            token_path=str(config.get("spotify_token_path") or DEFAULT_TOKEN_PATH),
        )


@dataclass(frozen=True)
class AuthorizationRequest:
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: Tuple[str, ...]
    state: str
    port: int


@dataclass(frozen=True)
class Authenticated:
    token: TokenSet


@dataclass(frozen=True)
class Failed:
    reason: str
    error: Optional[SpotifyAuthError] = field(default=None, compare=False)


@dataclass(frozen=True)
class TimedOut:
    redirect_uri: str = ""


AuthResult = Union[Authenticated, Failed, TimedOut]


class SpotifyAuthorizer:
    """Runs the authorization-code flow against a temporary loopback listener.

    Steps: pick a port, build the authorize URL, start listening, open the
    browser, wait for the redirect, exchange the code, persist the tokens.
    ``authorize()`` never raises; every ending is an AuthResult.

    Note on ``state``: the nonce is checked against the callback when
    ``settings.validate_state`` is on (the default). Turning it off accepts any
    returned state, which leaves the login open to CSRF-style code injection.
    """

    def __init__(
        self,
        settings: Optional[AuthSettings] = None,
        *,
        token_manager: Optional[TokenManager] = None,
        http_client: Optional[httpx.Client] = None,
        browser_opener: Callable[[str], Any] = webbrowser.open,
        port_selector: Callable[..., int] = select_port,
        server_factory: Callable[..., CallbackServer] = CallbackServer,
        on_listening: Optional[Callable[[AuthorizationRequest, str], None]] = None,
    ):
        self.settings = settings or AuthSettings()
        self.token_manager = token_manager or TokenManager(self.settings.token_path)
        self.http_client = http_client
        self.browser_opener = browser_opener
        self.port_selector = port_selector
        self.server_factory = server_factory
        self.on_listening = on_listening

    def prepare(
        self,
        client_id: str,
        client_secret: str,
        scopes: Optional[Iterable[str]] = None,
    ) -> AuthorizationRequest:
        port = self.port_selector(
            self.settings.port_candidates,
            host=self.settings.host,
            fallback_range=self.settings.fallback_port_range,
        )
        return AuthorizationRequest(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=build_redirect_uri(port, self.settings.host, self.settings.callback_path),
            scopes=normalize_scopes(scopes if scopes is not None else DEFAULT_SCOPES),
            state=generate_state(),
            port=port,
        )

    def authorize(
        self,
        client_id: str,
        client_secret: str,
        scopes: Optional[Iterable[str]] = None,
    ) -> AuthResult:
        client_id = str(client_id or "").strip()
        client_secret = str(client_secret or "").strip()
        if not client_id or not client_secret:
            return Failed("Missing Spotify credentials: set SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET.")

        try:
            request = self.prepare(client_id, client_secret, scopes)
        except SetupError as e:
            return Failed(str(e), e)
        auth_url = build_auth_url(request.client_id, request.redirect_uri, request.scopes, request.state)

        server = self.server_factory(
            request.port,
            host=self.settings.host,
            path=self.settings.callback_path,
            poll_interval=self.settings.poll_interval,
            expected_state=request.state if self.settings.validate_state else None,
        )
        try:
            server.start()
        except SetupError as e:
            logger.error("%s", e)
            return Failed(f"Could not start the local callback server: {e}", e)

        with server:
            self._notify_listening(request, auth_url)
            self._open_browser(auth_url)
            outcome = server.wait(self.settings.callback_timeout)

        return self._finish(request, outcome)

    def _notify_listening(self, request: AuthorizationRequest, auth_url: str) -> None:
        if self.on_listening is None:
            return
        try:
            self.on_listening(request, auth_url)
        except Exception as e:
            logger.warning("on_listening callback failed: %s", e)

    def _open_browser(self, auth_url: str) -> None:
        if not self.settings.open_browser:
            return
        try:
            self.browser_opener(auth_url)
        except Exception as e:
            # The URL is also handed to on_listening, so the user can still open it by hand.
            logger.warning("Could not open a browser: %s", e)

    def _finish(self, request: AuthorizationRequest, outcome) -> AuthResult:
        if isinstance(outcome, CallbackTimeout):
            return TimedOut(redirect_uri=request.redirect_uri)

        if isinstance(outcome, CallbackError):
            err = ProviderError(outcome.error, outcome.description)
            return Failed(str(err), err)

        if not isinstance(outcome, CallbackCode):
            return Failed(f"Unexpected callback outcome: {outcome!r}")

        try:
            token = exchange_code(
                outcome.code,
                request.redirect_uri,
                request.client_id,
                request.client_secret,
                http_client=self.http_client,
            )
        except ExchangeError as e:
            logger.error("%s", e)
            return Failed(f"Failed to exchange code for tokens: {e}", e)

        try:
            self.token_manager.save(token)
        except OSError as e:
            logger.error("Could not save Spotify tokens: %s", e)
            return Failed(f"Logged in, but the tokens could not be saved: {e}")

        return Authenticated(token)


def authorize(
    client_id: str,
    client_secret: str,
    scopes: Optional[Iterable[str]] = None,
    *,
    settings: Optional[AuthSettings] = None,
    **kwargs,
) -> AuthResult:
    """Run one Spotify login. See SpotifyAuthorizer for the keyword arguments."""

    return SpotifyAuthorizer(settings, **kwargs).authorize(client_id, client_secret, scopes)


def unwrap(result: AuthResult) -> TokenSet:
    """Return the token of an Authenticated result, raise the matching error otherwise."""

    if isinstance(result, Authenticated):
        return result.token
    if isinstance(result, TimedOut):
        raise AuthTimeoutError(f"No Spotify callback received on {result.redirect_uri}")
    if isinstance(result, Failed) and result.error is not None:
        raise result.error
    raise SpotifyAuthError(getattr(result, "reason", repr(result)))


def logout(token_manager: TokenManager) -> bool:
    return token_manager.clear()
