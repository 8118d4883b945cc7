from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .constants import ADMISSION_ACCEPTED, ADMISSION_PENDING, ADMISSION_REJECTED
from .errors import AdmissionRejected, PersistenceError
from .events import InboundEvent, InviteEvent, MessageEvent, SendAckEvent

if TYPE_CHECKING:
    from .service import DaemonService


class EventRouter:
    """
    Dispatches inbound chat events by variant.

    This class is responsible for:
    - completing waiting relay requests on ``SendAckEvent``
    - admission of invites (join, size check, welcome)
    - handing room messages to the command handler and posting replies

    Nothing raised while handling one event may stop the consumer loop, and
    the loop itself never waits on the homeserver: anything that does runs
    in a task spawned on the hub.
    """

    def __init__(self, hub: DaemonService) -> None:
        self.hub = hub
        self.log = logging.getLogger("pokemd.router")
        # Rooms with an invite being handled right now; event loop only.
        self._admitting: set[str] = set()
        # Commands in one room are answered in the order they were sent.
        self._room_locks: dict[str, asyncio.Lock] = {}

    async def consume(self) -> None:
        """Event-consumption loop; runs until cancelled."""
        while True:
            evt = await self.hub.client.next_event()
            try:
                await self.dispatch(evt)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.log.exception("Event handling failed event=%r", evt)

    async def dispatch(self, evt: InboundEvent) -> None:
        if isinstance(evt, SendAckEvent):
            self.hub.relay.on_send_ack(evt)
        elif isinstance(evt, InviteEvent):
            self.hub.spawn(self.on_invite(evt), name=f"invite-{evt.room_id}")
        elif isinstance(evt, MessageEvent):
            self.hub.spawn(self._serialized(evt), name=f"message-{evt.room_id}")
        else:
            self.log.debug("Ignoring unknown event %r", evt)

    async def _serialized(self, evt: MessageEvent) -> None:
        lock = self._room_locks.setdefault(evt.room_id, asyncio.Lock())
        async with lock:
            await self.on_message(evt)

    async def on_message(self, evt: MessageEvent) -> None:
        if evt.sender == self.hub.client.user_id:
            return
        reply = await self.hub.command_handler.handle(evt)
        if reply:
            await self.hub.reply(evt.room_id, reply)

    async def on_invite(self, evt: InviteEvent) -> None:
        room_id = evt.room_id
        if self.hub.security.get(room_id).admission == ADMISSION_ACCEPTED:
            self.log.debug("Invite for already accepted room=%s", room_id)
            return
        # Sync repeats an invite until membership changes; handle it once.
        if room_id in self._admitting:
            self.log.debug("Invite already being handled room=%s", room_id)
            return

        self._admitting.add(room_id)
        try:
            await self._admit(evt)
        finally:
            self._admitting.discard(room_id)

    async def _admit(self, evt: InviteEvent) -> None:
        security = self.hub.security
        room_id = evt.room_id

        decision = self.hub.admission.decide(evt)
        if not decision.accepted:
            self._log_rejection(AdmissionRejected(room_id, decision.reason))
            return

        try:
            security.set_admission(room_id, ADMISSION_PENDING)
            try:
                await self.hub.client.join(room_id)
            except Exception as e:
                self.log.error("Failed to join room=%s: %s", room_id, e)
                security.set_admission(room_id, ADMISSION_REJECTED)
                return

            count = await self.hub.client.get_member_count(room_id)
            if count is not None:
                security.record_membership(room_id, count)

            decision = self.hub.admission.check_size(count)
            if not decision.accepted:
                self._log_rejection(AdmissionRejected(room_id, decision.reason))
                security.set_admission(room_id, ADMISSION_REJECTED)
                try:
                    await self.hub.client.leave(room_id)
                except Exception as e:
                    self.log.warning("Failed to leave room=%s: %s", room_id, e)
                return

            security.set_admission(room_id, ADMISSION_ACCEPTED)
        except PersistenceError as e:
            self.log.error("Admission state not saved room=%s: %s", room_id, e)
            return

        self.log.info("Joined room=%s inviter=%s members=%s", room_id, evt.inviter, count)
        if self.hub.config.welcome_on_join and not security.get(room_id).block:
            await self.hub.reply(room_id, self.welcome_text())
            await self.hub.reply(room_id, await self.hub.command_handler.info_text(room_id))

    def welcome_text(self) -> str:
        return (
            "Welcome to Pok'em!\n\n"
            f"Send `{self.hub.config.command_prefix} help` to see available commands."
        )

    def _log_rejection(self, rejection: AdmissionRejected) -> None:
        self.log.warning("Invite rejected room=%s reason=%s", rejection.room_id, rejection.reason)
