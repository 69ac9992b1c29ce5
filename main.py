import argparse
import json
import sys

import questionary

from config import CONFIG_PATH, load_config
from menus.config_menu import config_menu, format_config
from menus.spotify_menu import (
    format_current,
    login,
    logout,
    run_player_command,
    setup_wizard,
    spotify_menu,
    token_status,
)
from spotify_api.authorizer import Authenticated
from utils.logger import log_error, log_info, setup_logging

PLAYER_COMMANDS = {
    "play": lambda c, a: c.play(a.uri, a.device),
    "pause": lambda c, a: c.pause(a.device),
    "next": lambda c, a: c.next_track(a.device),
    "previous": lambda c, a: c.previous_track(a.device),
    "current": lambda c, a: format_current(c.current()),
    "volume": lambda c, a: c.volume(a.value, a.device),
    "devices": lambda c, a: "\n".join(
        f"{'*' if d['is_active'] else ' '} {d['name']} ({d['type']}) id={d['id']}" for d in c.devices()
    ) or "No Spotify devices found. Open Spotify on any device.",
    "search": lambda c, a: "\n".join(
        f"{r['name']} - {r.get('artist') or r.get('owner') or ''}  {r['uri']}" for r in c.search(a.query, a.type, a.limit)
    ) or f"No results for: {a.query}",
    "find": lambda c, a: c.find(a.query),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Control Spotify from the terminal (Conduit Spotify component).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Run without a command to open the interactive menu.

Credentials come from SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET (environment
or .env) or config.json. Register http://127.0.0.1:8888/callback as a redirect
URI in your Spotify app.
        """,
    )
    parser.add_argument("--config", default=CONFIG_PATH, help=f"Path to config.json (default: {CONFIG_PATH})")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("login", help="Authorize with Spotify in the browser")
    sub.add_parser("logout", help="Delete the stored Spotify token")
    sub.add_parser("status", help="Show whether a Spotify token is stored")
    setup = sub.add_parser("setup", help="Create/register a Spotify app interactively")
    setup.add_argument("--reset", action="store_true", help="Replace existing credentials")
    sub.add_parser("config", help="Print the effective configuration")

    play = sub.add_parser("play", help="Resume playback or play a Spotify URI")
    play.add_argument("uri", nargs="?", help="spotify:track:..., spotify:album:..., spotify:playlist:...")
    for name in ("pause", "next", "previous"):
        sub.add_parser(name, help=f"{name.capitalize()} playback")
    sub.add_parser("current", help="Show the currently playing track")
    volume = sub.add_parser("volume", help="Show or set the volume (0-100, +10, -10)")
    volume.add_argument("value", nargs="?", help="Absolute 0-100 or relative +N/-N")
    sub.add_parser("devices", help="List available devices")
    search = sub.add_parser("search", help="Search Spotify")
    search.add_argument("query")
    search.add_argument("--type", default="track", choices=["track", "album", "artist", "playlist"])
    search.add_argument("--limit", type=int, default=10)
    find = sub.add_parser("find", help="Search for a track and play the best match")
    find.add_argument("query")

    for name in ("play", "pause", "next", "previous", "volume"):
        sub.choices[name].add_argument("--device", help="Target device id")
    for name in ("current", "devices", "search", "find"):
        sub.choices[name].set_defaults(device=None)

    return parser


def run_command(args: argparse.Namespace, config: dict) -> int:
    """Run a single subcommand; returns the process exit status."""
    if args.command == "login":
        return 0 if isinstance(login(config), Authenticated) else 1

    if args.command == "logout":
        log_info(logout(config))
        return 0

    if args.command == "status":
        log_info(token_status(config))
        return 0

    if args.command == "setup":
        message = setup_wizard(config, reset=args.reset)
        log_info(message)
        return 1 if message.startswith("❌") else 0

    if args.command == "config":
        log_info(format_config(config))
        return 0

    action = PLAYER_COMMANDS[args.command]
    return 0 if run_player_command(config, lambda client: action(client, args)) else 1


def interactive(config: dict, config_path: str = CONFIG_PATH) -> None:
    while True:
        choice = questionary.select(
            "🎵 Conduit Spotify — Main Menu",
            choices=["Spotify", "Config Menu", "Exit"],
        ).ask()

        if choice == "Spotify":
            spotify_menu(config)

        elif choice == "Config Menu":
            config = config_menu(config, config_path)

        elif choice in ("Exit", None):
            log_info("Exiting program...")
            break


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except json.JSONDecodeError as e:
        setup_logging()
        log_error(f"Config file contains invalid JSON: {e}")
        return 1
    except (OSError, ValueError) as e:
        setup_logging()
        log_error(f"Error loading config: {e}")
        return 1

    setup_logging(config.get("log_level", "INFO"), config.get("log_file") or None)

    if args.command:
        return run_command(args, config)

    interactive(config, args.config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
