import json
import logging
import os
import stat
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_PATH = os.path.join("~", ".conduit", "spotify_token.json")


@dataclass(frozen=True)
class TokenSet:
    """Canonical token payload stored by TokenManager."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    obtained_at: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_token_response(payload: Dict[str, Any], *, now: Optional[float] = None) -> "TokenSet":
        """Convert Spotify token response JSON into a TokenSet.

        Spotify returns:
        - access_token
        - token_type
        - expires_in (seconds)
        - refresh_token (optional; omitted on some refreshes)
        - scope (space-delimited string)

        The full payload is kept in ``raw`` so fields we don't model survive a
        save/load cycle.
        """

        return TokenSet(
            access_token=str(payload.get("access_token", "")),
            token_type=str(payload.get("token_type", "Bearer")),
            expires_in=int(payload.get("expires_in", 3600) or 0),
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope"),
            obtained_at=float(time.time() if now is None else now),
            raw=dict(payload),
        )

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TokenSet":
        return TokenSet(
            access_token=str(data["access_token"]),
            token_type=str(data.get("token_type", "Bearer")),
            expires_in=int(data.get("expires_in", 3600) or 0),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            obtained_at=float(data.get("obtained_at", 0.0)),
            raw=dict(data.get("raw") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "obtained_at": self.obtained_at,
            "raw": dict(self.raw),
        }

    @property
    def expires_at(self) -> float:
        return float(self.obtained_at) + float(self.expires_in)

    def is_expired(self, *, skew_seconds: int = 60, now: Optional[float] = None) -> bool:
        now_ts = time.time() if now is None else now
        return now_ts >= self.expires_at - float(skew_seconds)


class TokenManager:
    """File-based token store (one JSON file, owner read/write only).

    The file is the only record of "logged in": nothing is cached in memory
    between calls, so every load() reads the disk.
    """

    def __init__(self, token_path: str = DEFAULT_TOKEN_PATH):
        self.token_path = os.path.expanduser(token_path)

    def exists(self) -> bool:
        return os.path.isfile(self.token_path)

    def ensure_token_dir(self) -> None:
        directory = os.path.dirname(self.token_path)
        if directory:
            os.makedirs(directory, mode=0o700, exist_ok=True)

    def save(self, token: TokenSet) -> None:
        """Persist the token set. Raises OSError if the file cannot be written."""
        self.ensure_token_dir()

        # Create with 0600 so the secret is never briefly world-readable.
        fd = os.open(self.token_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(token.to_dict(), f, indent=2)
        os.chmod(self.token_path, stat.S_IRUSR | stat.S_IWUSR)
        logger.info("Saved Spotify tokens to %s", self.token_path)

    def load(self) -> Optional[TokenSet]:
        """Load the stored token set. Missing or unreadable files count as logged out."""
        if not os.path.exists(self.token_path):
            return None

        try:
            with open(self.token_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return TokenSet.from_dict(data)
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning("Ignoring unreadable token file %s: %s", self.token_path, e)
            return None

    def clear(self) -> bool:
        """Delete the token file. Returns True if a file was removed."""
        try:
            os.remove(self.token_path)
        except FileNotFoundError:
            return False
        logger.info("Deleted Spotify tokens at %s", self.token_path)
        return True
