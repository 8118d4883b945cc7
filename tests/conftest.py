from __future__ import annotations

import asyncio

import pytest

from pokemd.config import DaemonRuntimeConfig
from pokemd.errors import PersistenceError
from pokemd.events import InboundEvent, SendAckEvent
from pokemd.formatting import RenderedMessage
from pokemd.service import DaemonService
from pokemd.store import SessionStateStore

BOT = "@pokem:example.org"


class FakeChatClient:
    """In-memory stand-in for the Matrix session.

    ``send`` records the message and, with ``auto_ack``, queues the
    acknowledgement on the event stream the way the real client does.
    """

    def __init__(
        self,
        *,
        aliases: dict[str, str] | None = None,
        members: dict[str, int] | None = None,
        canonical: dict[str, str] | None = None,
        auto_ack: bool = True,
        ack_ok: bool = True,
        fail_join: bool = False,
        notice_delay: float = 0.0,
        join_delay: float = 0.0,
    ) -> None:
        self.user_id = BOT
        self.aliases = dict(aliases or {})
        self.members = dict(members or {})
        self.canonical = dict(canonical or {})
        self.auto_ack = auto_ack
        self.ack_ok = ack_ok
        self.fail_join = fail_join
        self.notice_delay = notice_delay
        self.join_delay = join_delay

        self.sent: list[tuple[str, RenderedMessage, str]] = []
        self.notices: list[tuple[str, str]] = []
        self.joined: list[str] = []
        self.left: list[str] = []
        self.alias_lookups: list[str] = []
        self.started = False
        self._events: asyncio.Queue[InboundEvent] | None = None
        self._loop = None

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    @property
    def events(self) -> asyncio.Queue[InboundEvent]:
        # Each test runs its own event loop; a queue belongs to one loop.
        loop = asyncio.get_running_loop()
        if self._events is None or self._loop is not loop:
            self._events = asyncio.Queue()
            self._loop = loop
        return self._events

    async def next_event(self) -> InboundEvent:
        return await self.events.get()

    def push(self, evt: InboundEvent) -> None:
        self.events.put_nowait(evt)

    async def send(self, room_id: str, message: RenderedMessage, *, txn_id: str) -> str:
        self.sent.append((room_id, message, txn_id))
        if self.auto_ack:
            if self.ack_ok:
                ack = SendAckEvent(txn_id, ok=True, event_id=f"$event{len(self.sent)}")
            else:
                ack = SendAckEvent(txn_id, ok=False, error="M_FORBIDDEN")
            self.push(ack)
        return txn_id

    async def send_notice(self, room_id: str, text: str) -> None:
        if self.notice_delay:
            await asyncio.sleep(self.notice_delay)
        self.notices.append((room_id, text))

    async def join(self, room_id: str) -> None:
        if self.join_delay:
            await asyncio.sleep(self.join_delay)
        if self.fail_join:
            raise RuntimeError("join refused")
        self.joined.append(room_id)

    async def leave(self, room_id: str) -> None:
        self.left.append(room_id)

    async def resolve_alias(self, alias: str) -> str | None:
        self.alias_lookups.append(alias)
        return self.aliases.get(alias)

    async def get_member_count(self, room_id: str) -> int | None:
        return self.members.get(room_id)

    async def get_canonical_alias(self, room_id: str) -> str | None:
        return self.canonical.get(room_id)

    def texts(self) -> list[str]:
        return [m.body for _, m, _ in self.sent]


class FlakyStore(SessionStateStore):
    """State store whose writes fail while ``broken`` is set."""

    broken = False

    def save_room(self, room_id, record):
        if self.broken:
            raise PersistenceError("disk full")
        super().save_room(room_id, record)

    def save_session(self, **values):
        if self.broken:
            raise PersistenceError("disk full")
        super().save_session(**values)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def state_path(tmp_path) -> str:
    return str(tmp_path / "state.toml")


@pytest.fixture
def make_hub(state_path):
    """Build a DaemonService around a FakeChatClient. Start it inside the test's loop."""

    def _make(client: FakeChatClient | None = None, **overrides) -> DaemonService:
        store = overrides.pop("store", None) or SessionStateStore(state_path)
        cfg = DaemonRuntimeConfig(state_path=state_path, username="pokem", **overrides)
        return DaemonService(cfg, client=client or FakeChatClient(), store=store)

    return _make
