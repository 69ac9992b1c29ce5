"""Spotify integration for Conduit: loopback OAuth login plus playback control.

Entry point for most callers is ``authorize()``; it returns an AuthResult
(Authenticated / Failed / TimedOut) instead of raising.
"""

from .authorizer import (
    Authenticated,
    AuthSettings,
    Failed,
    SpotifyAuthorizer,
    TimedOut,
    authorize,
    logout,
    unwrap,
)
from .client import SpotifyClient
from .errors import (
    AuthTimeoutError,
    ExchangeError,
    ProviderError,
    SetupError,
    SpotifyAPIError,
    SpotifyAuthError,
)
from .token_manager import TokenManager, TokenSet

__all__ = [
    "Authenticated",
    "AuthSettings",
    "AuthTimeoutError",
    "ExchangeError",
    "Failed",
    "ProviderError",
    "SetupError",
    "SpotifyAPIError",
    "SpotifyAuthError",
    "SpotifyAuthorizer",
    "SpotifyClient",
    "TimedOut",
    "TokenManager",
    "TokenSet",
    "authorize",
    "logout",
    "unwrap",
]
