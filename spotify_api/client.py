import logging
import time
from typing import Any, Dict, List, Optional, Union

import httpx

from .auth import refresh_access_token
from .errors import ExchangeError, SpotifyAPIError, SpotifyAuthError
from .token_manager import DEFAULT_TOKEN_PATH, TokenManager, TokenSet

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"


def volume_bar(volume: int, width: int = 20) -> str:
    volume = max(0, min(100, int(volume)))
    filled = round(volume / 100 * width)
    return "[" + "#" * filled + "-" * (width - filled) + f"] {volume}%"


def pick_device(devices: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Choose a device to wake up: a named desktop, any computer, any speaker, then anything."""

    if not devices:
        return None

    computers = [d for d in devices if d.get("type") == "Computer"]
    for d in computers:
        name = str(d.get("name") or "")
        if "MacBook" in name or "Desktop" in name:
            return d
    if computers:
        return computers[0]

    speakers = [d for d in devices if d.get("type") == "Speaker"]
    if speakers:
        return speakers[0]
    return devices[0]


class SpotifyClient:
    """Thin Spotify Web API client for playback control.

    Tokens come from the TokenManager on first use (the token file is the
    source of truth). Expired tokens are refreshed when a refresh token and the
    client secret are available.

    Retry behavior lives in request_json():
    - 429: honors Retry-After
    - 5xx: exponential backoff (best effort)
    - 401: one refresh attempt
    """

    def __init__(
        self,
        config: Dict[str, Any],
        *,
        token_manager: Optional[TokenManager] = None,
        http_client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ):
        self.config = config or {}
        self.token_manager = token_manager or TokenManager(
            self.config.get("spotify_token_path") or DEFAULT_TOKEN_PATH
        )
        self.http_client = http_client or httpx.Client(timeout=30.0)
        self._sleep = sleep
        self._token: Optional[TokenSet] = None

    # -----------------
    # Token management
    # -----------------

    def is_authenticated(self) -> bool:
        return self.token_manager.load() is not None

    def get_token(self) -> TokenSet:
        if self._token is None:
            self._token = self.token_manager.load()

        if self._token is None:
            raise SpotifyAuthError("Not logged in to Spotify. Run 'login' first.")

        if not self._token.is_expired():
            return self._token

        if not bool(self.config.get("spotify_auto_refresh", True)):
            raise SpotifyAuthError("Spotify token expired and spotify_auto_refresh is disabled.")

        return self._refresh()

    def _refresh(self) -> TokenSet:
        if not self._token or not self._token.refresh_token:
            raise SpotifyAuthError("Spotify token expired and no refresh_token is available. Run 'login' again.")

        try:
            refreshed = refresh_access_token(
                self._token.refresh_token,
                str(self.config.get("spotify_client_id", "")),
                str(self.config.get("spotify_client_secret", "")),
                http_client=self.http_client,
            )
        except ExchangeError as e:
            raise SpotifyAuthError(f"Could not refresh the Spotify token: {e}") from e

        self.token_manager.save(refreshed)
        self._token = refreshed
        return refreshed

    # -----------------
    # HTTP helpers
    # -----------------

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        retry_401_refresh: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """Make a Spotify Web API request; returns parsed JSON or None for empty bodies."""

        max_retries = int(self.config.get("spotify_max_retries", 3))
        backoff_base = float(self.config.get("spotify_backoff_base", 1.0))
        query = {k: v for k, v in (params or {}).items() if v is not None}

        attempt = 0
        while True:
            attempt += 1
            token = self.get_token()

            try:
                resp = self.http_client.request(
                    method.upper(),
                    f"{SPOTIFY_API_BASE_URL}{path}",
                    params=query or None,
                    json=json_body,
                    headers={
                        "Authorization": f"{token.token_type} {token.access_token}",
                        "Accept": "application/json",
                    },
                )
            except httpx.HTTPError as e:
                if attempt <= max_retries:
                    self._sleep(min(30.0, backoff_base * (2 ** (attempt - 1))))
                    continue
                raise SpotifyAPIError(f"Spotify API request failed: {e}") from e

            status = resp.status_code

            # 401: token revoked/expired server-side; try refresh once.
            if status == 401 and retry_401_refresh and self._token and self._token.refresh_token:
                retry_401_refresh = False
                self._refresh()
                continue

            if status == 429 and attempt <= max_retries:
                try:
                    delay = float(resp.headers.get("Retry-After", "1"))
                except ValueError:
                    delay = 1.0
                self._sleep(max(1.0, delay))
                continue

            if status >= 500 and attempt <= max_retries:
                self._sleep(min(60.0, backoff_base * (2 ** (attempt - 1))))
                continue

            if status >= 400:
                raise SpotifyAPIError(self._error_message(resp), status_code=status, body=resp.text)

            if status == 204 or not resp.content:
                return None

            try:
                return resp.json()
            except ValueError as e:
                raise SpotifyAPIError(
                    f"Spotify API response was not JSON (status {status}): {resp.text}", status_code=status
                ) from e

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            data = None
        err = data.get("error") if isinstance(data, dict) else None
        if isinstance(err, dict) and err.get("message"):
            return f"Spotify API error {resp.status_code}: {err['message']}"
        return f"Spotify API error {resp.status_code}: {resp.text}"

    # -----------------
    # Player
    # -----------------

    def devices(self) -> List[Dict[str, Any]]:
        data = self.request_json("GET", "/me/player/devices") or {}
        return [
            {
                "id": d.get("id"),
                "name": d.get("name"),
                "type": d.get("type"),
                "is_active": bool(d.get("is_active")),
                "volume": d.get("volume_percent"),
            }
            for d in data.get("devices") or []
            if isinstance(d, dict)
        ]

    def play(self, uri: Optional[str] = None, device: Optional[str] = None) -> str:
        body: Optional[Dict[str, Any]] = None
        if uri:
            # Tracks are queued by uri; albums/playlists/artists play as a context.
            body = {"uris": [uri]} if uri.startswith("spotify:track:") else {"context_uri": uri}

        try:
            self.request_json("PUT", "/me/player/play", params={"device_id": device}, json_body=body)
        except SpotifyAPIError as e:
            if e.status_code == 404 and not device:
                return self._play_on_best_device(uri, body)
            raise
        return f"Playing: {uri}" if uri else "Resumed playback"

    def _play_on_best_device(self, uri: Optional[str], body: Optional[Dict[str, Any]]) -> str:
        logger.info("No active device found; looking for one to activate")
        target = pick_device(self.devices())
        if target is None:
            raise SpotifyAPIError("No Spotify devices found. Open Spotify on any device.", status_code=404)

        try:
            self.request_json("PUT", "/me/player", json_body={"device_ids": [target["id"]], "play": True})
            self._sleep(1.0)
        except SpotifyAPIError as e:
            logger.warning("Transferring playback to %s failed: %s", target.get("name"), e)

        self.request_json("PUT", "/me/player/play", params={"device_id": target["id"]}, json_body=body)
        if uri:
            return f"Playing on {target['name']}: {uri}"
        return f"Resumed playback on {target['name']}"

    def pause(self, device: Optional[str] = None) -> str:
        self.request_json("PUT", "/me/player/pause", params={"device_id": device})
        return "Paused playback"

    def next_track(self, device: Optional[str] = None) -> str:
        self.request_json("POST", "/me/player/next", params={"device_id": device})
        return "Skipped to next track"

    def previous_track(self, device: Optional[str] = None) -> str:
        self.request_json("POST", "/me/player/previous", params={"device_id": device})
        return "Went back to previous track"

    def current(self) -> Optional[Dict[str, Any]]:
        data = self.request_json("GET", "/me/player/currently-playing")
        if not data or not data.get("item"):
            return None

        item = data["item"]
        return {
            "name": item.get("name"),
            "artist": ", ".join(a.get("name", "") for a in item.get("artists") or []),
            "album": (item.get("album") or {}).get("name"),
            "uri": item.get("uri"),
            "is_playing": bool(data.get("is_playing")),
            "progress_ms": data.get("progress_ms"),
            "duration_ms": item.get("duration_ms"),
        }

    def search(self, query: str, type: str = "track", limit: int = 10) -> List[Dict[str, Any]]:
        data = self.request_json("GET", "/search", params={"q": query, "type": type, "limit": int(limit)}) or {}
        items = (data.get(f"{type}s") or {}).get("items") or []

        results = []
        for item in items:
            if not isinstance(item, dict):
                continue
            entry = {"name": item.get("name"), "uri": item.get("uri")}
            if type == "track":
                entry["artist"] = ", ".join(a.get("name", "") for a in item.get("artists") or [])
                entry["album"] = (item.get("album") or {}).get("name")
            elif type == "album":
                entry["artist"] = ", ".join(a.get("name", "") for a in item.get("artists") or [])
            elif type == "playlist":
                entry["owner"] = (item.get("owner") or {}).get("display_name")
            results.append(entry)
        return results

    def find(self, query: str) -> str:
        """Search for a track and play the best match."""
        results = self.search(query, "track", 1)
        if not results:
            return f"No tracks found for: {query}"
        top = results[0]
        self.play(top["uri"])
        return f"Playing: {top['name']} by {top.get('artist') or 'Unknown'}"

    def volume(self, value: Union[int, str, None] = None, device: Optional[str] = None) -> str:
        """Get or set the volume. Accepts 0-100 or a relative change like "+10" / "-5"."""

        current = None
        for d in self.devices():
            if (device and d["id"] == device) or (not device and d["is_active"]):
                current = d.get("volume")
                break

        if value is None or str(value).strip() == "":
            if current is None:
                return "No active device"
            return f"Volume: {volume_bar(current)}"

        raw = str(value).strip()
        if raw[0] in "+-":
            if current is None:
                raise SpotifyAPIError("No active device to change the volume on.")
            target = int(current) + int(raw)
        else:
            target = int(raw)
        target = max(0, min(100, target))

        self.request_json("PUT", "/me/player/volume", params={"volume_percent": target, "device_id": device})
        return f"Volume: {volume_bar(target)}"

    def close(self) -> None:
        self.http_client.close()
