"""Per-room security state: auth tokens, block flag, admission, member count."""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from typing import TYPE_CHECKING, Any

from .constants import (
    ADMISSION_ACCEPTED,
    ADMISSION_STATES,
    S_ADMISSION,
    S_AUTH,
    S_AUTH_SET_BY,
    S_BLOCK,
    S_MEMBER_COUNT,
)
from .errors import AuthMismatch, AuthRequired, PersistenceError

if TYPE_CHECKING:
    from .store import SessionStateStore


@dataclass(frozen=True)
class RoomRecord:
    auth: str | None = None
    auth_set_by: str | None = None
    block: bool = False
    admission: str | None = None
    member_count: int | None = None

    def is_empty(self) -> bool:
        return self == RoomRecord()

    def to_state(self) -> dict[str, Any]:
        d = asdict(self)
        if not d[S_BLOCK]:
            d[S_BLOCK] = None
        return d

    @classmethod
    def from_state(cls, raw: dict[str, Any]) -> RoomRecord:
        auth = raw.get(S_AUTH)
        if not isinstance(auth, str) or not auth:
            auth = None
        set_by = raw.get(S_AUTH_SET_BY)
        admission = raw.get(S_ADMISSION)
        if admission not in ADMISSION_STATES:
            admission = None
        count = raw.get(S_MEMBER_COUNT)
        try:
            count = int(count) if count is not None else None
        except (TypeError, ValueError):
            count = None
        return cls(
            auth=auth,
            auth_set_by=set_by if isinstance(set_by, str) else None,
            block=bool(raw.get(S_BLOCK, False)),
            admission=admission,
            member_count=count,
        )


class SecurityState:
    """Owns every room's record; the store only holds a mirror.

    Mutations write the mirror before the in-memory record changes, under one
    lock, so readers never see a change that was not persisted.
    """

    def __init__(self, store: SessionStateStore | None = None) -> None:
        self.store = store
        self.log = logging.getLogger("pokemd.state")
        self._state_lock = threading.RLock()
        self._records: dict[str, RoomRecord] = {}

    def load(self, rooms: dict[str, dict[str, Any]]) -> None:
        with self._state_lock:
            self._records = {
                room_id: RoomRecord.from_state(raw) for room_id, raw in rooms.items()
            }

    def merge_defaults(self, tokens: dict[str, str]) -> None:
        """Fill in configured tokens, keyed by room id.

        A configured token never replaces one that is already stored.
        """
        with self._state_lock:
            for room_id, token in tokens.items():
                rec = self._records.get(room_id, RoomRecord())
                if rec.auth is not None:
                    continue
                self._commit(room_id, replace(rec, auth=token, auth_set_by="config"))

    def _commit(self, room_id: str, new: RoomRecord) -> RoomRecord:
        # Caller holds the lock.
        if self.store is not None:
            try:
                self.store.save_room(room_id, None if new.is_empty() else new.to_state())
            except PersistenceError:
                self.log.error("Room state change rolled back room=%s", room_id)
                raise
        if new.is_empty():
            self._records.pop(room_id, None)
        else:
            self._records[room_id] = new
        return new

    def get(self, room_id: str) -> RoomRecord:
        with self._state_lock:
            return self._records.get(room_id, RoomRecord())

    def get_token(self, room_id: str) -> str | None:
        return self.get(room_id).auth

    def set_token(self, room_id: str, token: str | None, setter: str | None) -> RoomRecord:
        with self._state_lock:
            rec = self._records.get(room_id, RoomRecord())
            if token is None:
                new = replace(rec, auth=None, auth_set_by=None)
            else:
                new = replace(rec, auth=token, auth_set_by=setter)
            if new == rec:
                return rec
            self.log.info(
                "Auth token %s room=%s by=%s",
                "cleared" if token is None else "set",
                room_id,
                setter or "-",
            )
            return self._commit(room_id, new)

    def set_blocked(self, room_id: str, blocked: bool) -> RoomRecord:
        with self._state_lock:
            rec = self._records.get(room_id, RoomRecord())
            if rec.block == blocked:
                return rec
            return self._commit(room_id, replace(rec, block=blocked))

    def set_admission(self, room_id: str, status: str) -> RoomRecord:
        if status not in ADMISSION_STATES:
            raise ValueError(f"unknown admission status {status!r}")
        with self._state_lock:
            rec = self._records.get(room_id, RoomRecord())
            if rec.admission == status:
                return rec
            return self._commit(room_id, replace(rec, admission=status))

    def record_membership(self, room_id: str, count: int) -> RoomRecord:
        with self._state_lock:
            rec = self._records.get(room_id, RoomRecord())
            if rec.member_count == count:
                return rec
            return self._commit(room_id, replace(rec, member_count=int(count)))

    def is_accepted(self, room_id: str) -> bool:
        """Rooms with no admission history (joined before pokemd ran) count as accepted."""
        admission = self.get(room_id).admission
        return admission is None or admission == ADMISSION_ACCEPTED

    def check_auth(self, room_id: str, presented: str | None, body: str) -> str:
        """Gate a relay on the room token. Returns the body to relay.

        The token may also lead the body, separated by whitespace; it is
        stripped before relaying.
        """
        token = self.get_token(room_id)
        if token is None:
            return body
        if presented is not None and presented == token:
            return body

        parts = body.lstrip().split(None, 1)
        if len(parts) == 2 and parts[0] == token:
            return parts[1]

        if presented is None:
            raise AuthRequired(f"token required for {room_id}")
        raise AuthMismatch(f"token mismatch for {room_id}")
