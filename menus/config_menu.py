import json

import questionary
from config import (
    CONFIG_PATH, load_config, validate_config, update_config, reset_to_defaults,
    CONFIG_SCHEMA
)
from utils.logger import log_info, log_error, log_success


def mask_secret(value: str) -> str:
    value = str(value or "")
    if not value:
        return "Not set"
    if len(value) <= 6:
        return "*" * len(value)
    return value[:4] + "..." + "*" * 4


def config_menu(config: dict, path: str = CONFIG_PATH) -> dict:
    """
    Display the configuration menu and handle user selections.
    Returns the potentially updated config dict.
    """
    while True:
        choice = questionary.select(
            "⚙️ Config Menu — What would you like to do?",
            choices=[
                "View current config",
                "Update a setting",
                "Toggle login options",
                "Reset to defaults",
                "Validate configuration",
                "Back"
            ]
        ).ask()

        if choice == "View current config":
            view_config(config)

        elif choice == "Update a setting":
            config = update_setting_menu(config, path)

        elif choice == "Toggle login options":
            config = toggle_login_options_menu(config, path)

        elif choice == "Reset to defaults":
            config = reset_config_menu(config, path)

        elif choice == "Validate configuration":
            validate_config_menu(config)

        elif choice in ("Back", None):
            break

    return config


def format_config(config: dict) -> str:
    """Render the config grouped by category, with secrets masked."""
    categories = {
        "Credentials": ["spotify_client_id", "spotify_client_secret", "spotify_scopes"],
        "Login": [
            "spotify_port_candidates", "spotify_fallback_port_range", "spotify_callback_timeout",
            "spotify_poll_interval", "spotify_validate_state", "spotify_open_browser", "spotify_token_path",
        ],
        "Web API": ["spotify_auto_refresh", "spotify_max_retries", "spotify_backoff_base"],
        "Logging": ["log_level", "log_file"],
    }

    lines = ["=" * 50, "📋 Current Configuration", "=" * 50]
    for category, keys in categories.items():
        lines.append(f"\n{category}:")
        for key in keys:
            if key not in config:
                continue
            value = config[key]
            if CONFIG_SCHEMA.get(key, {}).get("secret"):
                value = mask_secret(value)
            elif isinstance(value, bool):
                value = "✓ Enabled" if value else "✗ Disabled"
            elif isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            lines.append(f"  {key}: {value}")
    lines.append("\n" + "=" * 50)
    return "\n".join(lines)


def view_config(config: dict):
    """Display the current configuration in a readable format."""
    print("\n" + format_config(config))
    input("\nPress Enter to continue...")


def parse_setting_value(key: str, raw: str):
    """Convert text typed by the user into the type CONFIG_SCHEMA expects for key."""
    schema = CONFIG_SCHEMA.get(key, {})
    expected = schema.get("type")

    if expected == int:
        return int(raw)
    if expected == (int, float):
        return float(raw) if "." in raw else int(raw)
    if expected == list:
        raw = raw.strip()
        if raw.startswith("["):
            return json.loads(raw)
        items = [v.strip() for v in raw.split(",") if v.strip()]
        if schema.get("element_type") == int:
            return [int(v) for v in items]
        return items
    return raw


def update_setting_menu(config: dict, path: str = CONFIG_PATH) -> dict:
    """Menu to update individual settings."""
    editable_keys = list(CONFIG_SCHEMA.keys())
    editable_keys.append("Back")

    key = questionary.select(
        "Select setting to update:",
        choices=editable_keys
    ).ask()

    if key in ("Back", None):
        return config

    schema = CONFIG_SCHEMA.get(key, {})
    current_value = config.get(key, "Not set")

    if schema.get("secret"):
        print(f"\nCurrent value: {mask_secret(current_value)}")
    else:
        print(f"\nCurrent value: {current_value}")

    if "choices" in schema:
        new_value = questionary.select(
            f"Select new value for {key}:",
            choices=schema["choices"]
        ).ask()

    elif schema.get("type") == bool:
        new_value = questionary.confirm(
            f"Enable {key}?",
            default=current_value if isinstance(current_value, bool) else True
        ).ask()

    elif schema.get("secret"):
        new_value = questionary.password(f"Enter new value for {key}:").ask()

    else:
        if isinstance(current_value, list):
            default = ", ".join(str(v) for v in current_value)
        else:
            default = str(current_value) if current_value != "Not set" else ""
        raw = questionary.text(f"Enter new value for {key}:", default=default).ask()
        if raw is None:
            return config
        try:
            new_value = parse_setting_value(key, raw)
        except ValueError:
            log_error("Invalid value format")
            return config

    if new_value is None:
        return config

    # Update the config
    success, message = update_config(key, new_value, path)

    if success:
        log_success(message)
        config[key] = new_value
    else:
        log_error(message)

    return config


def toggle_login_options_menu(config: dict, path: str = CONFIG_PATH) -> dict:
    """Menu to toggle login flow options on/off."""
    login_settings = [
        ("spotify_validate_state", "Verify OAuth state on callback"),
        ("spotify_open_browser", "Open browser automatically"),
        ("spotify_auto_refresh", "Refresh expired tokens automatically"),
    ]

    while True:
        choices = []
        for key, label in login_settings:
            status = "✓" if config.get(key, False) else "✗"
            choices.append(f"{status} {label}")
        choices.append("Back")

        choice = questionary.select(
            "Toggle login options:",
            choices=choices
        ).ask()

        if choice in ("Back", None):
            break

        for key, label in login_settings:
            if label in choice:
                new_value = not config.get(key, False)
                success, message = update_config(key, new_value, path)

                if success:
                    config[key] = new_value
                    status = "enabled" if new_value else "disabled"
                    log_success(f"{label} {status}")
                else:
                    log_error(message)
                break

    return config


def reset_config_menu(config: dict, path: str = CONFIG_PATH) -> dict:
    """Menu to reset configuration to defaults."""
    confirm = questionary.confirm(
        "⚠️ Reset all settings to defaults? This cannot be undone.",
        default=False
    ).ask()

    if confirm:
        success, message = reset_to_defaults(path)

        if success:
            log_success(message)
            config = load_config(path)
        else:
            log_error(message)

    return config


def validate_config_menu(config: dict):
    """Validate the current configuration and show any errors."""
    is_valid, errors = validate_config(config)

    log_info("\n" + "=" * 50)
    log_info("🔍 Configuration Validation")
    log_info("=" * 50)

    if is_valid:
        log_success("Configuration is valid! ✓")
    else:
        log_error("Configuration has errors:")
        for error in errors:
            log_info(f"  ✗ {error}")

    log_info("=" * 50)
