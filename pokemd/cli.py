from __future__ import annotations

import argparse
import getpass
import logging
import os
import re
import sys
from dataclasses import replace
from pathlib import Path

from .config import DaemonRuntimeConfig, apply_config_data, load_toml
from .constants import DEFAULT_ROOM_KEY, PRIORITY_NAMES
from .logging_config import configure_logging
from .paths import default_config_path, default_state_path, ensure_private_dir
from .poke import PokeFailed, poke_server
from .service import DaemonService
from .store import SessionStateStore

# A first positional word shaped like "#room:server.tld" or "!id:server.tld".
_ROOM_LIKE_RE = re.compile(r"^.*:.*\..*")


def _write_default_config(config_path: str, state_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# pokemd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start pokemd again.

[matrix]

# Homeserver and account pokemd logs in as.
homeserver_url = "https://matrix.org"
username = ""

# Optional. When unset and no session is stored yet, pokemd asks on the terminal.
password = ""

# Display name of the device created at login.
device_name = "pokemd"

# Regular expression over user ids; only matching users can invite pokemd.
# Leave empty to accept invites from anyone.
allow_list = ""

# Refuse rooms with more members than this (0 disables the limit).
room_size_limit = 0

# Prefix for in-room commands, e.g. "!pokem info".
command_prefix = "!pokem"

# Message format: "markdown" or "plain". Requests may override it.
format = "markdown"

# Post a welcome and the room info after joining a room.
welcome_on_join = true

[daemon]

# Address and port for the HTTP listener.
addr = "0.0.0.0"
port = 80

# Seconds to wait for the homeserver to confirm a message.
send_timeout_s = 30.0

# Session state file (login session, room tokens). Maintained by pokemd.
state_path = {state_path!r}

[server]

# Where the one-shot `pokem` command sends messages.
# Leave empty to use the local daemon on [daemon].port.
url = ""
port = 0

[rooms]

# Names callers may use instead of room ids or aliases.
# "default" is used when no room is given; "<name>-urgent" receives
# high priority messages for <name>.
# default = "#notifications:example.org"
# ops = "!abcdefghijk:example.org"
# ops-urgent = "#ops-pager:example.org"

[auth]

# Initial authentication tokens, keyed by any name, alias or room id above.
# A token set in the room with `set auth` always wins over these.
# ops = "change-me"

[logging]

# Log level for pokemd itself.
level = "INFO"

# Log levels for the Matrix client library and the HTTP server.
matrix_level = "WARNING"
http_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)
    try:
        os.chmod(config_path, 0o600)
    except OSError:
        pass


def _ensure_first_run_files(config_path: str, state_path: str) -> bool:
    if os.path.exists(config_path):
        return False
    _write_default_config(config_path, state_path)
    return True


def _load_config(config_path: str | None) -> DaemonRuntimeConfig:
    cfg = DaemonRuntimeConfig(config_path=config_path)
    if config_path and os.path.exists(config_path):
        cfg = apply_config_data(cfg, load_toml(config_path))
    return cfg


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pokemd", description="Run the Pok'em relay daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument(
        "--state",
        default=None,
        help="Path to the session state file (default comes from config)",
    )
    p.add_argument("--addr", default=None, help="Address for the HTTP listener")
    p.add_argument("--port", type=int, default=None, help="Port for the HTTP listener")

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    state_default = str(args.state) if args.state else str(default_state_path())

    if _ensure_first_run_files(config_path, state_default):
        print(
            "Created a default pokemd config. Edit it before starting:\n"
            f"- Config: {config_path}\n"
            "\nThen re-run pokemd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = _load_config(config_path)
    if args.state:
        cfg = replace(cfg, state_path=str(args.state))
    elif not cfg.state_path:
        cfg = replace(cfg, state_path=state_default)

    if args.addr is not None:
        cfg = replace(cfg, addr=str(args.addr))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    store = SessionStateStore(cfg.state_path)
    session, _ = store.load()
    password = cfg.password
    if not session.get("access_token") and not password:
        if not sys.stdin.isatty():
            print("No stored session and no password configured.", file=sys.stderr)
            raise SystemExit(2)
        password = getpass.getpass(f"Password for {cfg.username}: ")

    svc = DaemonService(cfg, store=store, password=password)
    svc.run_forever()


def _build_poke_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pokem", description="Send a message to a room through a pokemd daemon"
    )
    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (rooms and [server] are read from it)",
    )
    p.add_argument("-r", "--room", default=None, help="Room name, alias or id")
    p.add_argument("--server", default=None, help="Daemon URL (default comes from config)")
    p.add_argument("--port", type=int, default=None, help="Daemon port")
    p.add_argument("-a", "--auth", default=None, help="Room authentication token")
    p.add_argument("-t", "--title", default=None, help="Message title")
    p.add_argument(
        "-p",
        "--priority",
        default=None,
        help=f"Priority 1-5 or one of: {', '.join(PRIORITY_NAMES)}",
    )
    p.add_argument("message", nargs="*", help="Message words (stdin is appended)")
    return p


def _pick_room(room: str | None, words: list[str]) -> tuple[str, list[str]]:
    if room:
        return room, words
    if len(words) > 1 and _ROOM_LIKE_RE.match(words[0]):
        return words[0], words[1:]
    return DEFAULT_ROOM_KEY, words


def poke_main(argv: list[str] | None = None) -> None:
    args = _build_poke_parser().parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    cfg = _load_config(str(args.config))
    room, words = _pick_room(args.room, list(args.message))
    room = cfg.rooms.get(room, room) if room != DEFAULT_ROOM_KEY else room

    if not sys.stdin.isatty():
        piped = sys.stdin.read().strip()
        if piped:
            words.append(piped)
    message = " ".join(words)

    server = args.server or cfg.server_url
    port = args.port if args.port is not None else cfg.server_port
    if not server:
        server = "http://localhost"
        port = port or cfg.port

    try:
        poke_server(
            server,
            room,
            message,
            port=port,
            token=args.auth,
            title=args.title,
            priority=args.priority,
        )
    except PokeFailed as e:
        print(f"Failed to send message: {e}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
