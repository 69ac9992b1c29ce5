import json
import sys
import tempfile
import time
import unittest
import urllib.parse
from pathlib import Path

import httpx

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from spotify_api.client import SpotifyClient, pick_device, volume_bar
from spotify_api.errors import SpotifyAPIError, SpotifyAuthError
from spotify_api.token_manager import TokenManager, TokenSet

DEVICES = {
    "devices": [
        {"id": "phone", "name": "Pixel", "type": "Smartphone", "is_active": True, "volume_percent": 50},
        {"id": "mac", "name": "Studio MacBook", "type": "Computer", "is_active": False, "volume_percent": 30},
    ]
}


class FakeSpotify:
    """Routes MockTransport requests to canned responses keyed by (method, path)."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        self.calls.append(request)
        responses = self.routes.get(key)
        if responses is None:
            return httpx.Response(204)
        if isinstance(responses, list):
            response = responses.pop(0) if len(responses) > 1 else responses[0]
        else:
            response = responses
        return response

    def paths(self):
        return [(r.method, r.url.path) for r in self.calls]


class ClientTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.token_manager = TokenManager(str(Path(self._tmp.name) / "token.json"))
        self.token_manager.save(TokenSet(access_token="ACCESS", refresh_token="REFRESH", obtained_at=time.time()))
        self.api = FakeSpotify()
        self.sleeps = []
        self.config = {"spotify_client_id": "cid", "spotify_client_secret": "secret", "spotify_max_retries": 2}

    def tearDown(self):
        self._tmp.cleanup()

    def client(self) -> SpotifyClient:
        return SpotifyClient(
            self.config,
            token_manager=self.token_manager,
            http_client=httpx.Client(transport=httpx.MockTransport(self.api)),
            sleep=self.sleeps.append,
        )


class TestHelpers(unittest.TestCase):
    def test_volume_bar(self):
        self.assertEqual(volume_bar(50, width=10), "[#####-----] 50%")
        self.assertEqual(volume_bar(150, width=4), "[####] 100%")

    def test_pick_device(self):
        self.assertIsNone(pick_device([]))
        devices = [
            {"id": "s", "name": "Kitchen", "type": "Speaker"},
            {"id": "c", "name": "Laptop", "type": "Computer"},
            {"id": "d", "name": "Home Desktop", "type": "Computer"},
        ]
        self.assertEqual(pick_device(devices)["id"], "d")
        self.assertEqual(pick_device(devices[:2])["id"], "c")
        self.assertEqual(pick_device(devices[:1])["id"], "s")
        self.assertEqual(pick_device([{"id": "tv", "type": "TV"}])["id"], "tv")


class TestRequests(ClientTestCase):
    def test_bearer_header(self):
        self.client().pause()
        request = self.api.calls[0]
        self.assertEqual(request.headers["Authorization"], "Bearer ACCESS")
        self.assertEqual(self.api.paths(), [("PUT", "/v1/me/player/pause")])

    def test_not_logged_in(self):
        self.token_manager.clear()
        with self.assertRaises(SpotifyAuthError):
            self.client().pause()
        self.assertEqual(self.api.calls, [])

    def test_expired_token_is_refreshed(self):
        self.token_manager.save(TokenSet(access_token="OLD", refresh_token="REFRESH", obtained_at=0.0))
        self.api.routes[("POST", "/api/token")] = httpx.Response(200, json={"access_token": "NEW", "expires_in": 3600})

        self.client().pause()

        token_request = self.api.calls[0]
        self.assertEqual(token_request.url.host, "accounts.spotify.com")
        form = dict(urllib.parse.parse_qsl(token_request.content.decode()))
        self.assertEqual(form["grant_type"], "refresh_token")
        self.assertEqual(form["refresh_token"], "REFRESH")
        self.assertEqual(self.api.calls[1].headers["Authorization"], "Bearer NEW")

        stored = self.token_manager.load()
        self.assertEqual(stored.access_token, "NEW")
        self.assertEqual(stored.refresh_token, "REFRESH")

    def test_expired_without_auto_refresh(self):
        self.token_manager.save(TokenSet(access_token="OLD", refresh_token="REFRESH", obtained_at=0.0))
        self.config["spotify_auto_refresh"] = False
        with self.assertRaises(SpotifyAuthError):
            self.client().pause()

    def test_401_refreshes_once(self):
        self.api.routes[("PUT", "/v1/me/player/pause")] = [
            httpx.Response(401, json={"error": {"status": 401, "message": "The access token expired"}}),
            httpx.Response(204),
        ]
        self.api.routes[("POST", "/api/token")] = httpx.Response(200, json={"access_token": "NEW"})

        self.assertEqual(self.client().pause(), "Paused playback")
        self.assertEqual(
            self.api.paths(),
            [("PUT", "/v1/me/player/pause"), ("POST", "/api/token"), ("PUT", "/v1/me/player/pause")],
        )

    def test_429_honors_retry_after(self):
        self.api.routes[("POST", "/v1/me/player/next")] = [
            httpx.Response(429, headers={"Retry-After": "3"}),
            httpx.Response(204),
        ]
        self.client().next_track()
        self.assertEqual(self.sleeps, [3.0])

    def test_server_errors_give_up_after_retries(self):
        self.api.routes[("POST", "/v1/me/player/next")] = httpx.Response(503, text="unavailable")
        with self.assertRaises(SpotifyAPIError) as ctx:
            self.client().next_track()
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(len(self.api.calls), 3)

    def test_error_message_from_body(self):
        self.api.routes[("PUT", "/v1/me/player/pause")] = httpx.Response(
            403, json={"error": {"status": 403, "message": "Player command failed: Premium required"}}
        )
        with self.assertRaises(SpotifyAPIError) as ctx:
            self.client().pause()
        self.assertIn("Premium required", str(ctx.exception))


class TestPlayer(ClientTestCase):
    def test_devices(self):
        self.api.routes[("GET", "/v1/me/player/devices")] = httpx.Response(200, json=DEVICES)
        devices = self.client().devices()
        self.assertEqual([d["id"] for d in devices], ["phone", "mac"])
        self.assertTrue(devices[0]["is_active"])
        self.assertEqual(devices[1]["volume"], 30)

    def test_play_track_and_context(self):
        client = self.client()
        client.play("spotify:track:abc")
        client.play("spotify:album:xyz", device="mac")

        self.assertEqual(json.loads(self.api.calls[0].content), {"uris": ["spotify:track:abc"]})
        self.assertEqual(json.loads(self.api.calls[1].content), {"context_uri": "spotify:album:xyz"})
        self.assertEqual(self.api.calls[1].url.params["device_id"], "mac")

    def test_resume_without_body(self):
        self.assertEqual(self.client().play(), "Resumed playback")
        self.assertEqual(self.api.calls[0].content, b"")

    def test_play_without_active_device_wakes_one(self):
        self.api.routes[("PUT", "/v1/me/player/play")] = [
            httpx.Response(404, json={"error": {"status": 404, "message": "Player command failed: No active device found"}}),
            httpx.Response(204),
        ]
        self.api.routes[("GET", "/v1/me/player/devices")] = httpx.Response(200, json=DEVICES)

        message = self.client().play("spotify:track:abc")

        self.assertEqual(message, "Playing on Studio MacBook: spotify:track:abc")
        self.assertEqual(
            self.api.paths(),
            [
                ("PUT", "/v1/me/player/play"),
                ("GET", "/v1/me/player/devices"),
                ("PUT", "/v1/me/player"),
                ("PUT", "/v1/me/player/play"),
            ],
        )
        self.assertEqual(json.loads(self.api.calls[2].content), {"device_ids": ["mac"], "play": True})
        self.assertEqual(self.api.calls[3].url.params["device_id"], "mac")

    def test_play_without_any_device(self):
        self.api.routes[("PUT", "/v1/me/player/play")] = httpx.Response(404, json={"error": {"message": "no device"}})
        self.api.routes[("GET", "/v1/me/player/devices")] = httpx.Response(200, json={"devices": []})
        with self.assertRaises(SpotifyAPIError) as ctx:
            self.client().play()
        self.assertIn("No Spotify devices found", str(ctx.exception))

    def test_current(self):
        self.api.routes[("GET", "/v1/me/player/currently-playing")] = httpx.Response(200, json={
            "is_playing": True,
            "progress_ms": 1000,
            "item": {
                "name": "Song",
                "uri": "spotify:track:1",
                "duration_ms": 200000,
                "artists": [{"name": "A"}, {"name": "B"}],
                "album": {"name": "Album"},
            },
        })
        current = self.client().current()
        self.assertEqual(current["name"], "Song")
        self.assertEqual(current["artist"], "A, B")
        self.assertEqual(current["album"], "Album")
        self.assertTrue(current["is_playing"])

    def test_current_nothing_playing(self):
        self.assertIsNone(self.client().current())

    def test_search_and_find(self):
        self.api.routes[("GET", "/v1/search")] = httpx.Response(200, json={
            "tracks": {"items": [{"name": "Song", "uri": "spotify:track:1", "artists": [{"name": "A"}], "album": {"name": "Al"}}]}
        })
        client = self.client()
        results = client.search("song")
        self.assertEqual(results, [{"name": "Song", "uri": "spotify:track:1", "artist": "A", "album": "Al"}])
        self.assertEqual(self.api.calls[0].url.params["q"], "song")
        self.assertEqual(self.api.calls[0].url.params["type"], "track")

        self.assertEqual(client.find("song"), "Playing: Song by A")
        self.assertEqual(json.loads(self.api.calls[-1].content), {"uris": ["spotify:track:1"]})

    def test_find_no_results(self):
        self.api.routes[("GET", "/v1/search")] = httpx.Response(200, json={"tracks": {"items": []}})
        self.assertEqual(self.client().find("nothing"), "No tracks found for: nothing")

    def test_volume_show(self):
        self.api.routes[("GET", "/v1/me/player/devices")] = httpx.Response(200, json=DEVICES)
        self.assertEqual(self.client().volume(), f"Volume: {volume_bar(50)}")

    def test_volume_relative_and_clamped(self):
        self.api.routes[("GET", "/v1/me/player/devices")] = httpx.Response(200, json=DEVICES)
        client = self.client()

        client.volume("+10")
        self.assertEqual(self.api.calls[-1].url.params["volume_percent"], "60")

        client.volume("-80")
        self.assertEqual(self.api.calls[-1].url.params["volume_percent"], "0")

        client.volume(250)
        self.assertEqual(self.api.calls[-1].url.params["volume_percent"], "100")

    def test_volume_relative_needs_active_device(self):
        self.api.routes[("GET", "/v1/me/player/devices")] = httpx.Response(200, json={"devices": []})
        with self.assertRaises(SpotifyAPIError):
            self.client().volume("+10")

    def test_volume_rejects_garbage(self):
        self.api.routes[("GET", "/v1/me/player/devices")] = httpx.Response(200, json=DEVICES)
        with self.assertRaises(ValueError):
            self.client().volume("loud")


if __name__ == "__main__":
    unittest.main(verbosity=2)
