import time
import webbrowser
from typing import Any, Callable, Dict, Optional

import questionary

from config import save_credentials_to_env
from spotify_api.auth import (
    DASHBOARD_URL,
    build_redirect_uri,
    check_spotify_credentials,
    spotify_app_setup_instructions,
    validate_client_credentials,
)
from spotify_api.authorizer import (
    Authenticated,
    AuthorizationRequest,
    AuthResult,
    AuthSettings,
    Failed,
    SpotifyAuthorizer,
    TimedOut,
)
from spotify_api.client import SpotifyClient
from spotify_api.errors import ProviderError, SpotifyAPIError, SpotifyAuthError
from spotify_api.ports import DEFAULT_PORT_CANDIDATES, select_port
from spotify_api.token_manager import TokenManager
from utils.logger import log_error, log_info, log_success, log_warning

PREFERRED_PORT = DEFAULT_PORT_CANDIDATES[0]


def _token_manager(config: dict) -> TokenManager:
    return TokenManager(AuthSettings.from_config(config).token_path)


def port_warning(request: AuthorizationRequest) -> Optional[str]:
    """Message shown when the login could not use the usual 8888 port."""
    if request.port == PREFERRED_PORT:
        return None
    return (
        f"Using port {request.port} because {PREFERRED_PORT} is in use.\n"
        f"You must add this EXACT redirect URI to your Spotify app:\n"
        f"   {request.redirect_uri}\n"
        f"Or free port {PREFERRED_PORT}:  lsof -ti:{PREFERRED_PORT} | xargs kill -9"
    )


def render_auth_result(result: AuthResult) -> str:
    """Turn a login result into the single message the user sees."""

    if isinstance(result, Authenticated):
        exp_str = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(result.token.expires_at))
        return f"✅ Authentication successful! Token expires at {exp_str}. You can now use Spotify commands."

    if isinstance(result, TimedOut):
        return (
            "Authorization timed out: no response from Spotify arrived in time.\n"
            "Run 'login' again and complete the authorization in your browser.\n"
            f"If the browser showed an error, check your Spotify app has EXACTLY: {result.redirect_uri}"
        )

    if isinstance(result, Failed):
        message = f"Authentication failed: {result.reason}"
        if isinstance(result.error, ProviderError) and result.error.error == "redirect_uri_mismatch":
            message += (
                "\n💡 The redirect URI registered in your Spotify app does not match. "
                "Add the exact URI shown above (with 127.0.0.1, not localhost)."
            )
        elif isinstance(result.error, ProviderError) and result.error.error == "access_denied":
            message += "\n💡 Access was denied in the browser. Run 'login' again to retry."
        elif "Missing Spotify credentials" in result.reason:
            message += "\n💡 Run 'setup' to get started."
        return message

    return f"Unexpected login result: {result!r}"


def _announce(request: AuthorizationRequest, auth_url: str) -> None:
    log_info("🎵 Spotify Authentication")
    log_info(f"📋 Using redirect URI: {request.redirect_uri}")
    warning = port_warning(request)
    if warning:
        log_warning(warning)
    log_info("🌐 Opening browser for authorization... If nothing opens, visit:")
    log_info(auth_url)
    log_info("⏳ Waiting for authorization (complete it in your browser)...")


def login(config: dict, *, authorizer: Optional[SpotifyAuthorizer] = None) -> AuthResult:
    creds = check_spotify_credentials(config)
    authorizer = authorizer or SpotifyAuthorizer(AuthSettings.from_config(config), on_listening=_announce)
    result = authorizer.authorize(
        config.get("spotify_client_id", ""),
        config.get("spotify_client_secret", ""),
        creds["scopes"],
    )

    message = render_auth_result(result)
    if isinstance(result, Authenticated):
        log_info(message)
    elif isinstance(result, TimedOut):
        log_warning(message)
    else:
        log_error(message)
    return result


def logout(config: dict) -> str:
    if _token_manager(config).clear():
        return "👋 Logged out from Spotify"
    return "Not logged in; nothing to clear."


def token_status(config: dict) -> str:
    tm = _token_manager(config)
    token = tm.load()
    if token is None:
        return "Not logged in (no stored Spotify token)."
    exp_str = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(token.expires_at))
    return (
        f"Logged in | Token expired: {'YES' if token.is_expired() else 'NO'} | Expires at: {exp_str} | "
        f"Refresh token: {'YES' if token.refresh_token else 'NO'}"
    )


def setup_wizard(config: dict, *, reset: bool = False) -> str:
    """Walk the user through creating a Spotify app and storing its credentials."""

    creds = check_spotify_credentials(config)
    if creds["ok"] and not reset:
        return "Spotify credentials are already configured. Use 'setup --reset' to replace them."

    settings = AuthSettings.from_config(config)
    port = select_port(settings.port_candidates, host=settings.host, fallback_range=settings.fallback_port_range)
    redirect_uri = build_redirect_uri(port, settings.host, settings.callback_path)

    log_info("\n" + "=" * 72)
    log_info("SPOTIFY APP SETUP")
    log_info("=" * 72)
    log_info(spotify_app_setup_instructions(redirect_uri=redirect_uri))
    log_info("=" * 72)

    if questionary.confirm("Open the Spotify Developer Dashboard in your browser?", default=True).ask():
        try:
            webbrowser.open(DASHBOARD_URL)
        except Exception as e:
            log_warning(f"Could not open a browser: {e}")

    client_id = (questionary.text("Client ID:").ask() or "").strip()
    client_secret = (questionary.password("Client Secret:").ask() or "").strip()
    if not client_id or not client_secret:
        return "❌ Setup cancelled: both Client ID and Client Secret are required."

    if not validate_client_credentials(client_id, client_secret):
        return "❌ Spotify rejected those credentials. Double-check the Client ID and Secret."

    try:
        save_credentials_to_env(client_id, client_secret)
    except OSError as e:
        log_warning(f"Could not write .env: {e}")
        log_info(f'export SPOTIFY_CLIENT_ID="{client_id}"')
        log_info('export SPOTIFY_CLIENT_SECRET="..."')

    config["spotify_client_id"] = client_id
    config["spotify_client_secret"] = client_secret
    log_success("Credentials saved.")

    if questionary.confirm("Log in to Spotify now?", default=True).ask():
        result = login(config)
        if not isinstance(result, Authenticated):
            return "Setup finished, but login did not complete. Run 'login' to try again."
    return "🎉 Spotify setup complete!"


# -----------------
# Player commands
# -----------------

def format_current(track: Optional[Dict[str, Any]]) -> str:
    if not track:
        return "Nothing is playing."
    state = "▶️" if track.get("is_playing") else "⏸️"
    return f"{state} {track.get('name')} by {track.get('artist')} ({track.get('album')})"


def run_player_command(config: dict, action: Callable[[SpotifyClient], str], client: Optional[SpotifyClient] = None) -> bool:
    """Run one player action, print its result, and report success."""
    owns_client = client is None
    if owns_client:
        client = SpotifyClient(config, token_manager=_token_manager(config))
    try:
        log_info(action(client))
        return True
    except (SpotifyAuthError, SpotifyAPIError) as e:
        log_error(str(e))
    except ValueError as e:
        log_error(f"Invalid value: {e}")
    finally:
        if owns_client:
            client.close()
    return False


def _search_and_play(client: SpotifyClient) -> str:
    query = (questionary.text("Search for:").ask() or "").strip()
    if not query:
        return "Search cancelled."
    results = client.search(query)
    if not results:
        return f"No tracks found for: {query}"
    uri = questionary.select(
        "Pick a track to play:",
        choices=[questionary.Choice(title=f"{r['name']} - {r.get('artist') or ''}", value=r["uri"]) for r in results]
        + [questionary.Choice(title="Back", value="")],
    ).ask()
    if not uri:
        return "Nothing selected."
    return client.play(uri)


def _volume(client: SpotifyClient) -> str:
    value = (questionary.text("Volume (0-100, +10, -10, empty to show):").ask() or "").strip()
    return client.volume(value or None)


def _devices(client: SpotifyClient) -> str:
    devices = client.devices()
    if not devices:
        return "No Spotify devices found. Open Spotify on any device."
    return "\n".join(
        f"{'*' if d['is_active'] else ' '} {d['name']} ({d['type']}) volume={d.get('volume')}" for d in devices
    )


def spotify_menu(config: dict) -> None:
    """Interactive Spotify menu."""
    actions = {
        "Play / resume": lambda c: c.play(),
        "Pause": lambda c: c.pause(),
        "Next track": lambda c: c.next_track(),
        "Previous track": lambda c: c.previous_track(),
        "Now playing": lambda c: format_current(c.current()),
        "Search and play": _search_and_play,
        "Volume": _volume,
        "Devices": _devices,
    }

    while True:
        log_info(token_status(config))
        choice = questionary.select(
            "🎵 Spotify — What would you like to do?",
            choices=["Login", "Logout", "Setup"] + list(actions.keys()) + ["Back"],
        ).ask()

        if choice in (None, "Back"):
            break
        elif choice == "Login":
            login(config)
        elif choice == "Logout":
            log_info(logout(config))
        elif choice == "Setup":
            log_info(setup_wizard(config, reset=True))
        else:
            run_player_command(config, actions[choice])
