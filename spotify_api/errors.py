from typing import Optional


class SpotifyAuthError(RuntimeError):
    """Base class for everything that can end a Spotify login attempt."""


class SetupError(SpotifyAuthError):
    """The local callback listener could not bind or listen."""


class ProviderError(SpotifyAuthError):
    """Spotify redirected back with ``error=...`` (denied consent, bad redirect URI, ...)."""

    def __init__(self, error: str, description: Optional[str] = None):
        self.error = error
        self.description = description
        message = f"Spotify authorization error: {error}"
        if description:
            message = f"{message} ({description})"
        super().__init__(message)


class AuthTimeoutError(SpotifyAuthError):
    """No callback arrived before the deadline."""


class ExchangeError(SpotifyAuthError):
    """The token endpoint rejected the authorization code (or refresh token)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class TransientConnectionError(Exception):
    """A single inbound connection was malformed or dropped. Never leaves the listener."""


class SpotifyAPIError(RuntimeError):
    """A Spotify Web API call failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)
