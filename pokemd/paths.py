from __future__ import annotations

import os
from pathlib import Path


def _xdg_dir(env: str, fallback: str) -> Path:
    base = os.environ.get(env)
    if base:
        return Path(base)
    return Path.home() / fallback


def default_config_dir() -> Path:
    override = os.environ.get("POKEMD_HOME")
    if override:
        return Path(override)
    return _xdg_dir("XDG_CONFIG_HOME", ".config") / "pokem"


def default_state_dir() -> Path:
    override = os.environ.get("POKEMD_HOME")
    if override:
        return Path(override)
    return _xdg_dir("XDG_STATE_HOME", ".local/state") / "pokem"


def default_config_path() -> Path:
    return default_config_dir() / "config.toml"


def default_state_path() -> Path:
    return default_state_dir() / "state.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
