"""Matrix session client.

The rest of pokemd talks to the chat network through ``ChatSessionClient``:
inbound traffic arrives as ``InboundEvent`` values from ``next_event()`` and
outbound sends are acknowledged asynchronously with a ``SendAckEvent`` carrying
the transaction id the caller chose.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Protocol

from mautrix.client import Client, InternalEventType
from mautrix.client.dispatcher import MembershipEventDispatcher
from mautrix.client.state_store import SyncStore
from mautrix.errors import MNotFound, MUnknownToken
from mautrix.types import (
    EventType,
    Format,
    MessageType,
    RoomAlias,
    RoomID,
    SyncToken,
    TextMessageEventContent,
    UserID,
)

from .errors import PersistenceError
from .events import InboundEvent, InviteEvent, MessageEvent, SendAckEvent
from .formatting import RenderedMessage, markdown_to_html

if TYPE_CHECKING:
    from .config import DaemonRuntimeConfig
    from .store import SessionStateStore


class ChatSessionClient(Protocol):
    user_id: str | None

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def next_event(self) -> InboundEvent: ...

    async def send(self, room_id: str, message: RenderedMessage, *, txn_id: str) -> str: ...

    async def send_notice(self, room_id: str, text: str) -> None: ...

    async def join(self, room_id: str) -> None: ...

    async def leave(self, room_id: str) -> None: ...

    async def resolve_alias(self, alias: str) -> str | None: ...

    async def get_member_count(self, room_id: str) -> int | None: ...

    async def get_canonical_alias(self, room_id: str) -> str | None: ...


def message_content(message: RenderedMessage) -> TextMessageEventContent:
    content = TextMessageEventContent(msgtype=MessageType.TEXT, body=message.body)
    if message.html is not None:
        content.format = Format.HTML
        content.formatted_body = message.html
    if message.mention_room:
        content["m.mentions"] = {"room": True}
    return content


class StateFileSyncStore(SyncStore):
    """Keeps the sync token in the ``[session]`` table of the state file.

    The token moves on every sync, so it is written at most once per
    ``min_interval_s`` and once more by ``flush`` on shutdown. Writes run in a
    worker thread; the store serializes them with its own lock.
    """

    def __init__(
        self,
        store: SessionStateStore,
        next_batch: str | None = None,
        *,
        min_interval_s: float = 30.0,
    ) -> None:
        self.store = store
        self.min_interval_s = min_interval_s
        self.log = logging.getLogger("pokemd.matrix")
        self._next_batch = next_batch
        self._saved = next_batch
        self._saved_at: float | None = None

    async def put_next_batch(self, next_batch: SyncToken) -> None:
        self._next_batch = next_batch
        now = time.monotonic()
        if self._saved_at is not None and now - self._saved_at < self.min_interval_s:
            return
        await self.flush(now)

    async def flush(self, now: float | None = None) -> None:
        token = self._next_batch
        if not token or token == self._saved:
            return
        try:
            await asyncio.to_thread(self.store.save_session, next_batch=str(token))
        except PersistenceError as e:
            self.log.warning("Sync token not saved: %s", e)
            return
        self._saved = token
        self._saved_at = time.monotonic() if now is None else now

    async def get_next_batch(self) -> SyncToken | None:
        return SyncToken(self._next_batch) if self._next_batch else None


class MatrixSessionClient:
    """``ChatSessionClient`` on top of a mautrix ``Client``."""

    def __init__(
        self,
        config: DaemonRuntimeConfig,
        store: SessionStateStore,
        session: dict | None = None,
        *,
        password: str | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.session = dict(session or {})
        self.password = password if password is not None else config.password
        self.log = logging.getLogger("pokemd.matrix")

        self.user_id: str | None = self.session.get("user_id")
        self._client: Client | None = None
        self._sync_store: StateFileSyncStore | None = None
        self._events: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._send_tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        if not self.config.homeserver_url:
            raise RuntimeError("matrix.homeserver_url is not set")

        token = self.session.get("access_token")
        client = Client(
            mxid=UserID(self.session.get("user_id") or ""),
            device_id=self.session.get("device_id") or "",
            base_url=self.config.homeserver_url,
            token=token or None,
        )
        self._sync_store = StateFileSyncStore(self.store, self.session.get("next_batch"))
        client.sync_store = self._sync_store
        self._client = client

        if token:
            try:
                whoami = await client.whoami()
            except MUnknownToken:
                self.log.warning("Stored access token was rejected; logging in again")
                client.api.token = ""
                self.store.save_session(access_token=None)
                await self._login(client)
            else:
                client.mxid = whoami.user_id
                if whoami.device_id:
                    client.device_id = whoami.device_id
                self.log.info(
                    "Resumed session user=%s device=%s", whoami.user_id, client.device_id
                )
        else:
            await self._login(client)
        self.user_id = str(client.mxid)

        client.add_dispatcher(MembershipEventDispatcher)
        client.add_event_handler(EventType.ROOM_MESSAGE, self._on_message)
        client.add_event_handler(InternalEventType.INVITE, self._on_invite)
        client.add_event_handler(InternalEventType.SYNC_ERRORED, self._on_sync_error)

        # Without a stored sync token, do not replay history as commands.
        client.ignore_initial_sync = not self.session.get("next_batch")
        client.start(filter_data=None)

    async def _login(self, client: Client) -> None:
        if not self.config.username or not self.password:
            raise RuntimeError("no stored session and no username/password to log in with")
        resp = await client.login(
            identifier=self.config.username,
            password=self.password,
            device_name=self.config.device_name,
            store_access_token=True,
        )
        self.session.update(
            user_id=str(resp.user_id),
            device_id=str(resp.device_id),
            access_token=resp.access_token,
        )
        self.store.save_session(
            homeserver_url=self.config.homeserver_url,
            user_id=str(resp.user_id),
            device_id=str(resp.device_id),
            access_token=resp.access_token,
        )
        self.log.info("Logged in user=%s device=%s", resp.user_id, resp.device_id)

    async def stop(self) -> None:
        for task in list(self._send_tasks):
            task.cancel()
        if self._client is None:
            return
        self._client.stop()
        if self._sync_store is not None:
            await self._sync_store.flush()
        try:
            await self._client.api.session.close()
        except Exception as e:
            self.log.debug("Closing HTTP session failed: %s", e)
        self._client = None

    @property
    def client(self) -> Client:
        if self._client is None:
            raise RuntimeError("Matrix client is not started")
        return self._client

    async def next_event(self) -> InboundEvent:
        return await self._events.get()

    async def send(self, room_id: str, message: RenderedMessage, *, txn_id: str) -> str:
        """Start a send and return immediately; the outcome arrives as a ``SendAckEvent``."""
        task = asyncio.create_task(
            self._deliver(room_id, message_content(message), txn_id), name=f"send-{txn_id[:8]}"
        )
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)
        return txn_id

    async def _deliver(
        self, room_id: str, content: TextMessageEventContent, txn_id: str
    ) -> None:
        try:
            event_id = await self.client.send_message_event(
                RoomID(room_id), EventType.ROOM_MESSAGE, content, txn_id=txn_id
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.warning("Send failed room=%s txn=%s: %s", room_id, txn_id, e)
            ack = SendAckEvent(correlation_id=txn_id, ok=False, error=str(e))
        else:
            ack = SendAckEvent(correlation_id=txn_id, ok=True, event_id=str(event_id))
        self._events.put_nowait(ack)

    async def send_notice(self, room_id: str, text: str) -> None:
        content = TextMessageEventContent(
            msgtype=MessageType.NOTICE,
            body=text,
            format=Format.HTML,
            formatted_body=markdown_to_html(text),
        )
        await self.client.send_message_event(RoomID(room_id), EventType.ROOM_MESSAGE, content)

    async def join(self, room_id: str) -> None:
        await self.client.join_room_by_id(RoomID(room_id))

    async def leave(self, room_id: str) -> None:
        await self.client.leave_room(RoomID(room_id))

    async def resolve_alias(self, alias: str) -> str | None:
        try:
            info = await self.client.resolve_room_alias(RoomAlias(alias))
        except MNotFound:
            return None
        return str(info.room_id)

    async def get_member_count(self, room_id: str) -> int | None:
        try:
            members = await self.client.get_joined_members(RoomID(room_id))
        except Exception as e:
            self.log.warning("Member count unavailable room=%s: %s", room_id, e)
            return None
        return len(members)

    async def get_canonical_alias(self, room_id: str) -> str | None:
        try:
            content = await self.client.get_state_event(
                RoomID(room_id), EventType.ROOM_CANONICAL_ALIAS
            )
        except MNotFound:
            return None
        except Exception as e:
            self.log.debug("Canonical alias lookup failed room=%s: %s", room_id, e)
            return None
        alias = getattr(content, "canonical_alias", None)
        return str(alias) if alias else None

    async def _on_message(self, evt) -> None:
        if str(evt.sender) == self.user_id:
            return
        if getattr(evt.content, "msgtype", None) not in (MessageType.TEXT, MessageType.NOTICE):
            return
        body = getattr(evt.content, "body", None)
        if not isinstance(body, str):
            return
        self._events.put_nowait(
            MessageEvent(room_id=str(evt.room_id), sender=str(evt.sender), body=body)
        )

    async def _on_invite(self, evt) -> None:
        if str(evt.state_key) != self.user_id:
            return
        self._events.put_nowait(InviteEvent(room_id=str(evt.room_id), inviter=str(evt.sender)))

    async def _on_sync_error(self, error=None, **_kwargs) -> None:
        self.log.warning("Matrix sync error: %s", error)
