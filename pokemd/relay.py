"""Relay core: one HTTP request in, one confirmed Matrix message out.

Each request walks ``resolved -> auth checked -> sent -> acked``. The send is
tagged with a fresh correlation id (the Matrix transaction id) and the request
parks on a future until the matching ``SendAckEvent`` arrives from the event
stream or ``send_timeout_s`` runs out.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .constants import FORMAT_MARKDOWN, PRIORITY_DEFAULT
from .errors import DeliveryFailed, EmptyMessage, RoomBlocked
from .events import SendAckEvent
from .formatting import render

if TYPE_CHECKING:
    from .matrix import ChatSessionClient
    from .rooms import RoomDirectory
    from .state import SecurityState


@dataclass(frozen=True)
class RelayRequest:
    room: str
    message: str
    token: str | None = None
    title: str | None = None
    priority: int | None = None
    format: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def urgent(self) -> bool:
        return self.priority is not None and self.priority > PRIORITY_DEFAULT


@dataclass(frozen=True)
class RelayResult:
    room_id: str
    correlation_id: str
    event_id: str | None = None


class RelayCore:
    def __init__(
        self,
        client: ChatSessionClient,
        directory: RoomDirectory,
        security: SecurityState,
        *,
        default_format: str = FORMAT_MARKDOWN,
        send_timeout_s: float = 30.0,
    ) -> None:
        self.client = client
        self.directory = directory
        self.security = security
        self.default_format = default_format
        self.send_timeout_s = float(send_timeout_s)
        self.log = logging.getLogger("pokemd.relay")
        # correlation id -> future resolved by on_send_ack; event loop only.
        self._pending: dict[str, asyncio.Future[SendAckEvent]] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def relay(self, request: RelayRequest) -> RelayResult:
        if not request.message.strip():
            raise EmptyMessage("empty message")

        target = await self.directory.resolve(request.room, urgent=request.urgent)
        room_id = target.room_id

        record = self.security.get(room_id)
        if record.block:
            raise RoomBlocked(f"{room_id} is blocked")
        if not self.security.is_accepted(room_id):
            raise DeliveryFailed(f"{room_id} has not been accepted ({record.admission})")

        body = self.security.check_auth(room_id, request.token, request.message)
        if not body.strip():
            raise EmptyMessage("empty message")

        rendered = render(
            body,
            title=request.title,
            tags=request.tags,
            fmt=request.format or self.default_format,
            mention_room=target.mention_room,
        )

        correlation_id = uuid.uuid4().hex
        fut: asyncio.Future[SendAckEvent] = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = fut
        try:
            try:
                await self.client.send(room_id, rendered, txn_id=correlation_id)
            except Exception as e:
                raise DeliveryFailed(f"send to {room_id} failed: {e}") from e

            try:
                ack = await asyncio.wait_for(fut, timeout=self.send_timeout_s)
            except asyncio.TimeoutError as e:
                self.log.warning(
                    "Send not acknowledged room=%s cid=%s timeout=%ss",
                    room_id,
                    correlation_id,
                    self.send_timeout_s,
                )
                raise DeliveryFailed(f"no acknowledgement from {room_id}") from e
        finally:
            self._pending.pop(correlation_id, None)

        if not ack.ok:
            raise DeliveryFailed(f"send to {room_id} failed: {ack.error or 'unknown error'}")

        self.log.info(
            "Relayed room=%s ref=%s cid=%s event=%s",
            room_id,
            target.reference,
            correlation_id,
            ack.event_id or "-",
        )
        return RelayResult(room_id=room_id, correlation_id=correlation_id, event_id=ack.event_id)

    def on_send_ack(self, ack: SendAckEvent) -> bool:
        """Complete the waiting request. Unknown or late acks are dropped."""
        fut = self._pending.pop(ack.correlation_id, None)
        if fut is None or fut.done():
            self.log.debug("Dropping unmatched ack cid=%s ok=%s", ack.correlation_id, ack.ok)
            return False
        fut.set_result(ack)
        return True
