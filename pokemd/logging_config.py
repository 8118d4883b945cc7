from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import DaemonRuntimeConfig
from .util import clean_optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# mautrix logs under "mau.*"; uvicorn under its own three names.
MATRIX_LOGGERS = ("mau",)
HTTP_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def parse_level(value: str | int | None, default: int) -> int:
    """``"debug"``, ``"WARN"``, ``10`` or ``"10"``; anything else gives ``default``."""
    if isinstance(value, int):
        return value
    text = (value or "").strip().upper()
    if text == "WARN":
        return logging.WARNING
    if text.isdigit():
        return int(text)
    return logging.getLevelNamesMapping().get(text, default)


def _file_handler(path: str) -> logging.Handler:
    p = Path(os.path.expanduser(path))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    # The log carries room ids and inviter ids.
    os.chmod(p, 0o600)
    return handler


def configure_logging(
    cfg: DaemonRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install pokemd's root handlers, replacing any already there."""
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    log_file = clean_optional(override_file) or clean_optional(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or DEFAULT_FORMAT,
        datefmt=clean_optional(cfg.log_datefmt),
    )
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    for name in MATRIX_LOGGERS:
        logging.getLogger(name).setLevel(parse_level(cfg.log_matrix_level, logging.WARNING))
    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(parse_level(cfg.log_http_level, logging.WARNING))

    logging.captureWarnings(True)
