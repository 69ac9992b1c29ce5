import copy
import json
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

CONFIG_PATH = "config.json"
ENV_PATH = ".env"

# Environment variables that override config.json values.
ENV_OVERRIDES = {
    "SPOTIFY_CLIENT_ID": "spotify_client_id",
    "SPOTIFY_CLIENT_SECRET": "spotify_client_secret",
    "SPOTIFY_TOKEN_PATH": "spotify_token_path",
}

# Default configuration values
DEFAULT_CONFIG = {
    # Spotify app credentials (normally supplied via SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET)
    "spotify_client_id": "",
    "spotify_client_secret": "",
    "spotify_scopes": [
        "user-read-playback-state",
        "user-modify-playback-state",
        "user-read-currently-playing",
        "streaming",
        "playlist-read-private",
        "playlist-read-collaborative",
    ],

    # Login flow
    "spotify_port_candidates": [8888, 8889, 8890, 8891, 8892],
    "spotify_fallback_port_range": [9000, 9999],
    "spotify_callback_timeout": 300,
    "spotify_poll_interval": 0.1,
    "spotify_validate_state": True,
    "spotify_open_browser": True,
    "spotify_token_path": "~/.conduit/spotify_token.json",

    # Web API
    "spotify_auto_refresh": True,
    "spotify_max_retries": 3,
    "spotify_backoff_base": 1.0,

    # Logging
    "log_level": "INFO",
    "log_file": "",
}

# Validation rules for config fields
CONFIG_SCHEMA = {
    "spotify_client_id": {"type": str, "required": False},
    "spotify_client_secret": {"type": str, "required": False, "secret": True},
    "spotify_scopes": {"type": list, "required": False, "element_type": str},

    "spotify_port_candidates": {"type": list, "required": False, "element_type": int},
    "spotify_fallback_port_range": {"type": list, "required": False, "element_type": int, "length": 2},
    "spotify_callback_timeout": {"type": (int, float), "required": False, "min": 10, "max": 3600},
    "spotify_poll_interval": {"type": (int, float), "required": False, "min": 0.01, "max": 5},
    "spotify_validate_state": {"type": bool, "required": False},
    "spotify_open_browser": {"type": bool, "required": False},
    "spotify_token_path": {"type": str, "required": True},

    "spotify_auto_refresh": {"type": bool, "required": False},
    "spotify_max_retries": {"type": int, "required": False, "min": 0, "max": 10},
    "spotify_backoff_base": {"type": (int, float), "required": False, "min": 0.1, "max": 10.0},

    "log_level": {"type": str, "required": False, "choices": ["DEBUG", "INFO", "WARNING", "ERROR"]},
    "log_file": {"type": str, "required": False},
}


def _read_config_file(path: str) -> Dict[str, Any]:
    """Read config.json (if present) and fill in defaults, without environment overrides."""
    config: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            raise ValueError(f"Config file {path} must contain a JSON object.")

    # Apply defaults for missing fields
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = copy.deepcopy(value)

    return config


def load_config(path: str = CONFIG_PATH, *, env_path: Optional[str] = ENV_PATH) -> Dict[str, Any]:
    """Load configuration, applying defaults, .env and environment overrides.

    Precedence (highest first): environment variables, .env file, config.json,
    DEFAULT_CONFIG. A missing config.json is not an error.
    """
    config = _read_config_file(path)

    # Already-exported variables win over the .env file.
    if env_path and os.path.isfile(env_path):
        load_dotenv(env_path, override=False)

    for env_key, config_key in ENV_OVERRIDES.items():
        value = os.environ.get(env_key, "").strip()
        if value:
            config[config_key] = value

    return config


def save_config(config: Dict[str, Any], path: str = CONFIG_PATH) -> bool:
    """Save configuration to file."""
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        return True
    except Exception as e:
        raise IOError(f"Failed to save config: {e}")


def save_credentials_to_env(client_id: str, client_secret: str, env_path: str = ENV_PATH) -> None:
    """Write (or replace) the Spotify credentials in a .env file, owner-readable only."""
    lines = []
    if os.path.exists(env_path):
        with open(env_path, "r", encoding="utf-8") as f:
            lines = [
                line.rstrip("\n")
                for line in f
                if not line.startswith(("SPOTIFY_CLIENT_ID=", "SPOTIFY_CLIENT_SECRET="))
            ]

    lines.append(f'SPOTIFY_CLIENT_ID="{client_id}"')
    lines.append(f'SPOTIFY_CLIENT_SECRET="{client_secret}"')

    with open(env_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    os.chmod(env_path, 0o600)

    os.environ["SPOTIFY_CLIENT_ID"] = client_id
    os.environ["SPOTIFY_CLIENT_SECRET"] = client_secret


def validate_config(config: Dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate configuration against schema.
    Returns (is_valid, list_of_errors).
    """
    errors = []

    for key, rules in CONFIG_SCHEMA.items():
        # Check required fields
        if rules.get("required", False) and key not in config:
            errors.append(f"Missing required field: {key}")
            continue

        if key not in config:
            continue

        value = config[key]

        # Type check (bool is an int subclass; don't let True pass as a number)
        expected_type = rules.get("type")
        if expected_type and (
            not isinstance(value, expected_type) or (isinstance(value, bool) and expected_type is not bool)
        ):
            type_names = expected_type.__name__ if not isinstance(expected_type, tuple) else "/".join(t.__name__ for t in expected_type)
            errors.append(f"Field '{key}' must be {type_names}, got {type(value).__name__}")
            continue

        # List element type check (when schema uses: {"type": list, "element_type": ...})
        if isinstance(value, list) and "element_type" in rules:
            elem_type = rules["element_type"]
            bad_elems = [v for v in value if not isinstance(v, elem_type)]
            if bad_elems:
                errors.append(
                    f"Field '{key}' must be a list of {elem_type.__name__}, got invalid elements: {bad_elems}"
                )
                continue
            if "length" in rules and len(value) != rules["length"]:
                errors.append(f"Field '{key}' must have exactly {rules['length']} elements, got {len(value)}")
                continue

        # Choices check
        if "choices" in rules and value not in rules["choices"]:
            errors.append(f"Field '{key}' must be one of {rules['choices']}, got '{value}'")

        # Range check for numeric values
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if "min" in rules and value < rules["min"]:
                errors.append(f"Field '{key}' must be >= {rules['min']}, got {value}")
            if "max" in rules and value > rules["max"]:
                errors.append(f"Field '{key}' must be <= {rules['max']}, got {value}")

    ports = config.get("spotify_port_candidates")
    if isinstance(ports, list):
        bad_ports = [p for p in ports if isinstance(p, int) and not 1024 <= p <= 65535]
        if bad_ports:
            errors.append(f"Field 'spotify_port_candidates' has ports outside 1024-65535: {bad_ports}")

    port_range = config.get("spotify_fallback_port_range")
    if isinstance(port_range, list) and len(port_range) == 2 and all(isinstance(p, int) for p in port_range):
        if not 1024 <= port_range[0] <= port_range[1] <= 65535:
            errors.append(f"Field 'spotify_fallback_port_range' must be an ascending range within 1024-65535, got {port_range}")

    return len(errors) == 0, errors


def update_config(key: str, value: Any, path: str = CONFIG_PATH) -> tuple[bool, str]:
    """
    Update a single config field with validation.
    Returns (success, message).
    """
    config = _read_config_file(path)

    # Check if key is valid
    if key not in CONFIG_SCHEMA:
        return False, f"Unknown config key: {key}"

    # Create temporary config with new value
    test_config = config.copy()
    test_config[key] = value

    # Validate the change
    is_valid, errors = validate_config(test_config)
    if not is_valid:
        return False, f"Validation failed: {', '.join(errors)}"

    # Save the updated config
    config[key] = value
    save_config(config, path)

    if CONFIG_SCHEMA[key].get("secret"):
        return True, f"Updated '{key}'"
    return True, f"Updated '{key}' to '{value}'"


def reset_to_defaults(path: str = CONFIG_PATH) -> tuple[bool, str]:
    """Reset configuration to default values."""
    try:
        save_config(copy.deepcopy(DEFAULT_CONFIG), path)
        return True, "Configuration reset to defaults"
    except Exception as e:
        return False, f"Failed to reset config: {e}"


def get_config_value(key: str, default: Any = None, path: str = CONFIG_PATH) -> Any:
    """Get a single config value with optional default."""
    try:
        config = load_config(path)
        return config.get(key, default)
    except Exception:
        return default
