from __future__ import annotations

import os
import re

_ROOM_ID_RE = re.compile(r"^![^:\s]+:\S+$")
_ROOM_ALIAS_RE = re.compile(r"^#[^:\s]+:\S+\.\S+$")
_USER_ID_RE = re.compile(r"^@.*:.*\..*")


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def is_room_id(value: str) -> bool:
    return bool(_ROOM_ID_RE.match(value))


def is_room_alias(value: str) -> bool:
    return bool(_ROOM_ALIAS_RE.match(value))


def is_user_id(value: str) -> bool:
    return bool(_USER_ID_RE.match(value))


def clean_optional(value) -> str | None:
    if value is None:
        return None
    s = str(value)
    if not s.strip():
        return None
    return s
