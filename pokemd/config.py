from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any

from .constants import DEFAULT_COMMAND_PREFIX, FORMAT_MARKDOWN


@dataclass(frozen=True)
class DaemonRuntimeConfig:
    config_path: str | None = None
    state_path: str | None = None
    homeserver_url: str = ""
    username: str = ""
    password: str | None = None
    device_name: str = "pokemd"
    allow_list: str | None = None
    room_size_limit: int = 0
    command_prefix: str = DEFAULT_COMMAND_PREFIX
    format: str = FORMAT_MARKDOWN
    addr: str = "0.0.0.0"
    port: int = 80
    send_timeout_s: float = 30.0
    welcome_on_join: bool = True
    server_url: str | None = None
    server_port: int | None = None
    rooms: dict[str, str] = field(default_factory=dict)
    auth: dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"
    log_matrix_level: str = "WARNING"
    log_http_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    log_datefmt: str | None = None

    @property
    def default_room(self) -> str | None:
        return self.rooms.get("default")


_MATRIX_KEYS = {
    "homeserver_url",
    "username",
    "password",
    "device_name",
    "allow_list",
    "room_size_limit",
    "command_prefix",
    "format",
    "welcome_on_join",
}

_DAEMON_KEYS = {"addr", "port", "send_timeout_s", "state_path"}

_SERVER_KEYS = {"url": "server_url", "port": "server_port"}

_LOGGING_KEYS = {
    "level": "log_level",
    "matrix_level": "log_matrix_level",
    "http_level": "log_http_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def _string_table(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, str] = {}
    for k, v in value.items():
        if isinstance(v, str) and v.strip():
            out[str(k)] = v.strip()
    return out


def apply_config_data(base: DaemonRuntimeConfig, data: dict) -> DaemonRuntimeConfig:
    """Flatten the config file tables onto ``base``.

    Unknown keys are ignored. Empty strings for optional values mean "unset".
    """
    flat: dict[str, Any] = {}

    matrix = data.get("matrix")
    if isinstance(matrix, dict):
        flat.update({k: v for k, v in matrix.items() if k in _MATRIX_KEYS})

    daemon = data.get("daemon")
    if isinstance(daemon, dict):
        flat.update({k: v for k, v in daemon.items() if k in _DAEMON_KEYS})

    server = data.get("server")
    if isinstance(server, dict):
        for k, target in _SERVER_KEYS.items():
            if k in server:
                flat[target] = server[k]

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        for k, target in _LOGGING_KEYS.items():
            if k in log_table:
                flat[target] = log_table[k]

    if "rooms" in data:
        flat["rooms"] = _string_table(data.get("rooms"))
    if "auth" in data:
        flat["auth"] = _string_table(data.get("auth"))

    allowed = set(asdict(base).keys())
    # This identifies where the file came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in flat.items() if k in allowed}

    for key in ("password", "allow_list", "server_url", "log_file", "log_datefmt"):
        if key in updates and updates[key] == "":
            updates[key] = None
    if "room_size_limit" in updates:
        updates["room_size_limit"] = max(0, int(updates["room_size_limit"] or 0))
    if "port" in updates:
        updates["port"] = int(updates["port"])
    if updates.get("server_port") is not None:
        updates["server_port"] = int(updates["server_port"])
    if "send_timeout_s" in updates:
        updates["send_timeout_s"] = float(updates["send_timeout_s"])

    return replace(base, **updates) if updates else base
