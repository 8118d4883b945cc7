import asyncio

import pytest

from conftest import FakeChatClient
from pokemd.constants import ADMISSION_PENDING
from pokemd.errors import (
    AuthMismatch,
    AuthRequired,
    DeliveryFailed,
    EmptyMessage,
    RoomBlocked,
    UnresolvedRoom,
)
from pokemd.events import SendAckEvent
from pokemd.relay import RelayCore, RelayRequest
from pokemd.rooms import RoomDirectory
from pokemd.state import SecurityState

ROOM = "!abc:example.org"


def _core(client: FakeChatClient, *, timeout: float = 1.0, **names: str) -> RelayCore:
    directory = RoomDirectory(names or {"ops": ROOM}, resolver=client.resolve_alias)
    return RelayCore(client, directory, SecurityState(), send_timeout_s=timeout)


async def _pump(client: FakeChatClient, core: RelayCore) -> None:
    while True:
        evt = await client.next_event()
        if isinstance(evt, SendAckEvent):
            core.on_send_ack(evt)


def _relay(client: FakeChatClient, core: RelayCore, request: RelayRequest):
    async def run():
        pump = asyncio.create_task(_pump(client, core))
        try:
            return await core.relay(request)
        finally:
            pump.cancel()

    return asyncio.run(run())


def test_relay_sends_to_resolved_room() -> None:
    client = FakeChatClient()
    core = _core(client)
    result = _relay(client, core, RelayRequest(room="ops", message="build ok"))

    assert result.room_id == ROOM
    assert result.event_id == "$event1"
    assert [(room, msg.body) for room, msg, _ in client.sent] == [(ROOM, "build ok")]
    assert client.sent[0][2] == result.correlation_id
    assert core.pending_count == 0


def test_correlation_ids_are_unique() -> None:
    client = FakeChatClient()
    core = _core(client)

    async def run():
        pump = asyncio.create_task(_pump(client, core))
        try:
            return await asyncio.gather(
                *(core.relay(RelayRequest(room="ops", message=f"m{i}")) for i in range(5))
            )
        finally:
            pump.cancel()

    results = asyncio.run(run())
    assert len({r.correlation_id for r in results}) == 5


@pytest.mark.parametrize("token", [None, "", "anything"])
def test_open_room_accepts_any_token(token) -> None:
    client = FakeChatClient()
    core = _core(client)
    _relay(client, core, RelayRequest(room="ops", message="hi", token=token))
    assert client.texts() == ["hi"]


@pytest.mark.parametrize("presented", ["", "hunter", "hunter2x", "xhunter2", "HUNTER2"])
def test_token_variants_are_rejected(presented) -> None:
    client = FakeChatClient()
    core = _core(client)
    core.security.set_token(ROOM, "hunter2", "@alice:example.org")

    with pytest.raises(AuthMismatch):
        _relay(client, core, RelayRequest(room="ops", message="x", token=presented))
    assert client.sent == []


def test_missing_token_is_required() -> None:
    client = FakeChatClient()
    core = _core(client)
    core.security.set_token(ROOM, "hunter2", "@alice:example.org")

    with pytest.raises(AuthRequired):
        _relay(client, core, RelayRequest(room="ops", message="x"))
    _relay(client, core, RelayRequest(room="ops", message="x", token="hunter2"))
    assert client.texts() == ["x"]


def test_token_in_body_is_stripped() -> None:
    client = FakeChatClient()
    core = _core(client)
    core.security.set_token(ROOM, "hunter2", "@alice:example.org")

    _relay(client, core, RelayRequest(room="ops", message="hunter2 deploy done"))
    assert client.texts() == ["deploy done"]


def test_empty_message_is_rejected() -> None:
    client = FakeChatClient()
    core = _core(client)
    with pytest.raises(EmptyMessage):
        _relay(client, core, RelayRequest(room="ops", message="  \n"))


def test_unknown_room() -> None:
    client = FakeChatClient()
    core = _core(client)
    with pytest.raises(UnresolvedRoom):
        _relay(client, core, RelayRequest(room="nowhere", message="x"))


def test_blocked_room() -> None:
    client = FakeChatClient()
    core = _core(client)
    core.security.set_blocked(ROOM, True)
    with pytest.raises(RoomBlocked):
        _relay(client, core, RelayRequest(room="ops", message="x"))
    assert client.sent == []


def test_room_not_yet_accepted() -> None:
    client = FakeChatClient()
    core = _core(client)
    core.security.set_admission(ROOM, ADMISSION_PENDING)
    with pytest.raises(DeliveryFailed):
        _relay(client, core, RelayRequest(room="ops", message="x"))


def test_negative_ack_fails() -> None:
    client = FakeChatClient(ack_ok=False)
    core = _core(client)
    with pytest.raises(DeliveryFailed):
        _relay(client, core, RelayRequest(room="ops", message="x"))
    assert core.pending_count == 0


def test_send_exception_fails() -> None:
    class Exploding(FakeChatClient):
        async def send(self, room_id, message, *, txn_id):
            raise RuntimeError("connection reset")

    client = Exploding()
    core = _core(client)
    with pytest.raises(DeliveryFailed):
        _relay(client, core, RelayRequest(room="ops", message="x"))
    assert core.pending_count == 0


def test_timeout_then_late_ack_is_ignored() -> None:
    client = FakeChatClient(auto_ack=False)
    core = _core(client, timeout=0.05)

    async def run():
        with pytest.raises(DeliveryFailed):
            await core.relay(RelayRequest(room="ops", message="x"))
        cid = client.sent[0][2]
        assert core.pending_count == 0
        return core.on_send_ack(SendAckEvent(cid, ok=True, event_id="$late"))

    assert asyncio.run(run()) is False
    assert core.pending_count == 0


def test_urgent_without_urgent_room_mentions_room() -> None:
    client = FakeChatClient()
    core = _core(client)
    _relay(client, core, RelayRequest(room="ops", message="disk full", priority=5))
    assert client.texts() == ["@room: disk full"]


def test_urgent_room_is_used() -> None:
    client = FakeChatClient()
    core = _core(client, ops=ROOM, **{"ops-urgent": "!pager:example.org"})
    result = _relay(client, core, RelayRequest(room="ops", message="disk full", priority=4))
    assert result.room_id == "!pager:example.org"
    assert client.texts() == ["disk full"]


def test_format_override() -> None:
    client = FakeChatClient()
    core = _core(client)
    _relay(client, core, RelayRequest(room="ops", message="**x**", format="plain"))
    _relay(client, core, RelayRequest(room="ops", message="**x**"))
    assert client.sent[0][1].html is None
    assert client.sent[1][1].html == "<strong>x</strong>"
