import json
import logging
import secrets
import urllib.parse
from typing import Any, Dict, Iterable, Optional, Tuple

import httpx

from .errors import ExchangeError
from .token_manager import TokenSet

logger = logging.getLogger(__name__)

SPOTIFY_ACCOUNTS_BASE_URL = "https://accounts.spotify.com"
AUTHORIZE_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/authorize"
TOKEN_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/api/token"
DASHBOARD_URL = "https://developer.spotify.com/dashboard"

CALLBACK_PATH = "/callback"

DEFAULT_SCOPES: Tuple[str, ...] = (
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
    "streaming",
    "playlist-read-private",
    "playlist-read-collaborative",
)


def generate_state() -> str:
    """Random CSRF nonce sent with the authorize request."""

    return secrets.token_hex(16)


def normalize_scopes(scopes: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Strip, drop blanks and de-duplicate while keeping the caller's order."""

    out = []
    for s in scopes or ():
        s = str(s).strip()
        if s and s not in out:
            out.append(s)
    return tuple(out)


def build_redirect_uri(port: int, host: str = "127.0.0.1", path: str = CALLBACK_PATH) -> str:
    # Spotify matches the redirect URI literally, so this must stay 127.0.0.1 (not localhost).
    return f"http://{host}:{int(port)}{path}"


def build_auth_url(client_id: str, redirect_uri: str, scopes: Iterable[str], state: str) -> str:
    """Return the Spotify authorize URL for the authorization-code flow."""

    client_id = str(client_id or "").strip()
    if not client_id:
        raise ValueError("client_id must not be empty")
    redirect_uri = str(redirect_uri or "").strip()
    if not redirect_uri:
        raise ValueError("redirect_uri must not be empty")

    params: Dict[str, str] = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "scope": " ".join(normalize_scopes(scopes)),
    }
    if state:
        params["state"] = str(state)

    return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params, quote_via=urllib.parse.quote)}"


def check_spotify_credentials(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate Spotify OAuth config fields and return a structured status dict."""

    config = config or {}
    client_id = str(config.get("spotify_client_id", "") or "").strip()
    client_secret = str(config.get("spotify_client_secret", "") or "").strip()
    scopes = list(normalize_scopes(config.get("spotify_scopes") or DEFAULT_SCOPES))

    missing = []
    if not client_id:
        missing.append("SPOTIFY_CLIENT_ID")
    if not client_secret:
        missing.append("SPOTIFY_CLIENT_SECRET")

    if missing:
        return {
            "ok": False,
            "client_id": client_id,
            "scopes": scopes,
            "missing": missing,
            "message": (
                f"Missing Spotify credentials: {', '.join(missing)}.\n"
                "Set them in your environment, a .env file or config.json, "
                "or run the setup wizard."
            ),
        }

    return {
        "ok": True,
        "client_id": client_id,
        "scopes": scopes,
        "missing": [],
        "message": "Spotify credentials look OK.",
    }


def spotify_app_setup_instructions(*, redirect_uri: str = "http://127.0.0.1:8888/callback") -> str:
    """Return user-facing setup instructions for creating a Spotify Developer app."""

    redirect_uri = str(redirect_uri or "").strip() or "http://127.0.0.1:8888/callback"
    return (
        "Spotify app setup:\n"
        f"1) Go to {DASHBOARD_URL}\n"
        "2) Create an app (or select an existing app)\n"
        f"3) Add this Redirect URI in the app settings: {redirect_uri}\n"
        "4) Tick 'Web API' under the APIs used\n"
        "5) Copy the Client ID and Client Secret from the app's settings page\n\n"
        "Notes:\n"
        "- Redirect URI must match *exactly*, including 127.0.0.1 instead of localhost.\n"
        "- If port 8888 is busy a different port is used and must be registered too.\n"
    )


def _post_form(
    url: str,
    form: Dict[str, Any],
    *,
    http_client: Optional[httpx.Client] = None,
    auth: Optional[Tuple[str, str]] = None,
) -> Dict[str, Any]:
    data = {k: str(v) for k, v in (form or {}).items() if v is not None}
    headers = {"Content-Type": "application/x-www-form-urlencoded"}

    try:
        if http_client is not None:
            resp = http_client.post(url, data=data, headers=headers, auth=auth)
        else:
            with httpx.Client(timeout=30.0, follow_redirects=False) as client:
                resp = client.post(url, data=data, headers=headers, auth=auth)
    except httpx.HTTPError as e:
        raise ExchangeError(f"Spotify token request failed: {e}") from e

    if resp.status_code >= 400:
        raise ExchangeError(
            f"Spotify token request failed (HTTP {resp.status_code}): {resp.text}",
            status_code=resp.status_code,
            body=resp.text,
        )

    try:
        payload = resp.json()
    except json.JSONDecodeError as e:
        raise ExchangeError(
            f"Spotify token response was not JSON: {resp.text}",
            status_code=resp.status_code,
            body=resp.text,
        ) from e

    if not isinstance(payload, dict):
        raise ExchangeError(
            f"Spotify token response was not an object: {payload}",
            status_code=resp.status_code,
            body=resp.text,
        )

    return payload


def _token_set(payload: Dict[str, Any]) -> TokenSet:
    try:
        return TokenSet.from_token_response(payload)
    except (TypeError, ValueError) as e:
        raise ExchangeError(
            f"Spotify token response was malformed ({e}): {payload}",
            body=json.dumps(payload),
        ) from e


def exchange_code(
    code: str,
    redirect_uri: str,
    client_id: str,
    client_secret: str,
    *,
    http_client: Optional[httpx.Client] = None,
) -> TokenSet:
    """Trade an authorization code for tokens.

    Codes are single-use, so nothing here retries: a failure means the user has
    to log in again.
    """

    payload = _post_form(
        TOKEN_URL,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "client_secret": client_secret,
        },
        http_client=http_client,
    )
    if not payload.get("access_token"):
        raise ExchangeError(
            f"Spotify token exchange failed: {payload}",
            body=json.dumps(payload),
        )

    logger.info("Exchanged authorization code for Spotify tokens")
    return _token_set(payload)


def refresh_access_token(
    refresh_token: str,
    client_id: str,
    client_secret: str,
    *,
    http_client: Optional[httpx.Client] = None,
) -> TokenSet:
    payload = _post_form(
        TOKEN_URL,
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        },
        http_client=http_client,
    )
    if not payload.get("access_token"):
        raise ExchangeError(f"Spotify token refresh failed: {payload}", body=json.dumps(payload))

    # Spotify may omit refresh_token on refresh; keep existing.
    if not payload.get("refresh_token"):
        payload = {**payload, "refresh_token": refresh_token}

    logger.info("Refreshed Spotify access token")
    return _token_set(payload)


def validate_client_credentials(
    client_id: str,
    client_secret: str,
    *,
    http_client: Optional[httpx.Client] = None,
) -> bool:
    """Check a client id/secret pair with a client-credentials grant."""

    if not client_id or not client_secret:
        return False
    try:
        payload = _post_form(
            TOKEN_URL,
            {"grant_type": "client_credentials"},
            http_client=http_client,
            auth=(client_id, client_secret),
        )
    except ExchangeError as e:
        logger.warning("Spotify rejected the client credentials: %s", e)
        return False
    return bool(payload.get("access_token"))
