"""Durable session state for pokemd.

The state file is TOML, maintained by pokemd:

- ``[session]`` holds the resumable login (user id, device id, access token)
  and the sync token.
- ``[rooms."<room id>"]`` mirrors the per-room security state.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit import TOMLDocument

from .constants import S_ROOMS, S_SESSION
from .errors import PersistenceError
from .paths import ensure_private_dir
from .util import expand_path

_HEADER = """pokemd session state (TOML)

Written by pokemd on every change. Keep it private: it holds the Matrix
access token and the authentication tokens of every room.
"""


class SessionStateStore:
    def __init__(self, path: str | None) -> None:
        self.path = expand_path(path) if path else None
        self.log = logging.getLogger("pokemd.store")
        self._write_lock = threading.Lock()

    def _read_doc(self) -> TOMLDocument:
        if not self.path or not os.path.exists(self.path):
            return tomlkit.document()
        with open(self.path, encoding="utf-8") as f:
            text = f.read()
        if not text.strip():
            return tomlkit.document()
        return tomlkit.parse(text)

    def _write_doc(self, doc: TOMLDocument) -> None:
        if not self.path:
            return
        p = Path(self.path)
        if p.parent:
            ensure_private_dir(p.parent)
        tmp = p.with_name(p.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(tomlkit.dumps(doc))
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, p)

    def load(self) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
        """Return ``(session, rooms)``. A missing or empty file is a first run."""
        try:
            doc = self._read_doc()
        except Exception as e:
            raise PersistenceError(f"failed to read state {self.path}: {e}") from e

        session: dict[str, Any] = {}
        raw_session = doc.get(S_SESSION)
        if isinstance(raw_session, dict):
            session = {str(k): v for k, v in raw_session.unwrap().items()}

        rooms: dict[str, dict[str, Any]] = {}
        raw_rooms = doc.get(S_ROOMS)
        if isinstance(raw_rooms, dict):
            for room_id, raw in raw_rooms.unwrap().items():
                if isinstance(raw, dict):
                    rooms[str(room_id)] = dict(raw)

        self.log.info(
            "Loaded state path=%s session=%s rooms=%s",
            self.path or "-",
            "yes" if session.get("access_token") else "no",
            len(rooms),
        )
        return session, rooms

    def save_session(self, **values: Any) -> None:
        """Merge ``values`` into ``[session]``. ``None`` removes a key."""
        try:
            with self._write_lock:
                doc = self._read_doc()
                if not doc.body:
                    for line in _HEADER.splitlines():
                        doc.add(tomlkit.comment(line) if line else tomlkit.nl())
                tbl = doc.get(S_SESSION)
                if tbl is None:
                    tbl = tomlkit.table()
                    doc[S_SESSION] = tbl
                for k, v in values.items():
                    if v is None:
                        if k in tbl:
                            del tbl[k]
                    else:
                        tbl[k] = v
                self._write_doc(doc)
        except Exception as e:
            raise PersistenceError(f"session persist failed: {e}") from e

    def save_room(self, room_id: str, record: dict[str, Any] | None) -> None:
        """Replace the mirror for ``room_id``; ``None`` or empty removes it."""
        try:
            with self._write_lock:
                doc = self._read_doc()
                rooms = doc.get(S_ROOMS)
                if rooms is None:
                    rooms = tomlkit.table(is_super_table=True)
                    doc[S_ROOMS] = rooms

                values = {k: v for k, v in (record or {}).items() if v is not None}
                if not values:
                    if room_id in rooms:
                        del rooms[room_id]
                else:
                    room_tbl = tomlkit.table()
                    for k in sorted(values):
                        room_tbl[k] = values[k]
                    rooms[room_id] = room_tbl
                self._write_doc(doc)
        except Exception as e:
            raise PersistenceError(f"room state persist failed for {room_id}: {e}") from e
