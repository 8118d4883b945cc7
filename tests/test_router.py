import asyncio

from conftest import FakeChatClient, wait_for
from pokemd.constants import ADMISSION_ACCEPTED, ADMISSION_REJECTED
from pokemd.events import InviteEvent, MessageEvent, SendAckEvent
from pokemd.relay import RelayRequest

ROOM = "!abc:example.org"
ALICE = "@alice:example.org"


def _invite(hub, inviter: str = ALICE, room: str = ROOM) -> None:
    asyncio.run(hub.router.on_invite(InviteEvent(room_id=room, inviter=inviter)))


def test_allowed_invite_is_joined_and_welcomed(make_hub) -> None:
    client = FakeChatClient(members={ROOM: 3})
    hub = make_hub(client, allow_list=r"@alice:example\.org", room_size_limit=5)

    _invite(hub)

    assert client.joined == [ROOM]
    rec = hub.security.get(ROOM)
    assert rec.admission == ADMISSION_ACCEPTED
    assert rec.member_count == 3
    assert client.notices[0][1].startswith("Welcome to Pok'em!")
    assert "This Room's ID is" in client.notices[1][1]


def test_invite_from_stranger_is_ignored(make_hub) -> None:
    client = FakeChatClient(members={ROOM: 1})
    hub = make_hub(client, allow_list=r"@alice:example\.org")

    _invite(hub, inviter="@mallory:example.org")

    assert client.joined == []
    assert client.notices == []
    assert hub.security.get(ROOM).admission is None


def test_oversized_room_is_left(make_hub) -> None:
    client = FakeChatClient(members={ROOM: 40})
    hub = make_hub(client, room_size_limit=10)

    _invite(hub)

    assert client.joined == [ROOM]
    assert client.left == [ROOM]
    assert hub.security.get(ROOM).admission == ADMISSION_REJECTED
    assert not hub.security.is_accepted(ROOM)
    assert client.notices == []


def test_repeat_invite_for_accepted_room_is_a_no_op(make_hub) -> None:
    client = FakeChatClient(members={ROOM: 2})
    hub = make_hub(client)
    _invite(hub)
    _invite(hub)
    assert client.joined == [ROOM]


def test_failed_join_marks_rejected(make_hub) -> None:
    client = FakeChatClient(fail_join=True)
    hub = make_hub(client)
    _invite(hub)
    assert hub.security.get(ROOM).admission == ADMISSION_REJECTED


def test_no_welcome_when_disabled(make_hub) -> None:
    client = FakeChatClient(members={ROOM: 2})
    hub = make_hub(client, welcome_on_join=False)
    _invite(hub)
    assert client.joined == [ROOM]
    assert client.notices == []


def test_consumer_survives_handler_errors(make_hub) -> None:
    client = FakeChatClient()
    hub = make_hub(client)
    calls = []

    async def broken(evt):
        calls.append(evt)
        raise RuntimeError("boom")

    hub.router.on_message = broken

    async def run():
        consumer = asyncio.create_task(hub.router.consume())
        client.push(MessageEvent(ROOM, ALICE, "!pokem info"))
        client.push(SendAckEvent("unknown", ok=True))
        client.push(MessageEvent(ROOM, ALICE, "!pokem info"))
        await wait_for(lambda: len(calls) == 2)
        consumer.cancel()

    asyncio.run(run())
    assert len(calls) == 2


def test_slow_reply_does_not_hold_back_acks(make_hub) -> None:
    client = FakeChatClient(notice_delay=0.5)
    hub = make_hub(client, rooms={"ops": ROOM}, send_timeout_s=0.2)

    async def run():
        await hub.start()
        try:
            client.push(MessageEvent(ROOM, ALICE, "!pokem help"))
            await asyncio.sleep(0)
            result = await hub.relay.relay(RelayRequest(room="ops", message="deploy done"))
            await wait_for(lambda: client.notices)
            return result
        finally:
            await hub.stop()

    result = asyncio.run(run())
    assert result.room_id == ROOM
    assert result.event_id == "$event1"
    assert client.notices[0][1].startswith("Pok'em commands:")


def test_commands_in_one_room_are_answered_in_order(make_hub) -> None:
    client = FakeChatClient(notice_delay=0.05)
    hub = make_hub(client)

    async def run():
        await hub.start()
        try:
            client.push(MessageEvent(ROOM, ALICE, "!pokem set auth first"))
            client.push(MessageEvent(ROOM, ALICE, "!pokem set auth second"))
            await wait_for(lambda: len(client.notices) == 2)
        finally:
            await hub.stop()

    asyncio.run(run())
    assert [text for _, text in client.notices] == [
        "Auth Token set to first",
        "Auth Token set to second",
    ]
    assert hub.security.get_token(ROOM) == "second"


def test_repeated_invite_while_joining_is_handled_once(make_hub) -> None:
    client = FakeChatClient(members={ROOM: 2}, join_delay=0.1)
    hub = make_hub(client)

    async def run():
        await hub.start()
        try:
            client.push(InviteEvent(room_id=ROOM, inviter=ALICE))
            client.push(InviteEvent(room_id=ROOM, inviter=ALICE))
            await wait_for(lambda: len(client.notices) == 2)
            await asyncio.sleep(0.15)
        finally:
            await hub.stop()

    asyncio.run(run())
    assert client.joined == [ROOM]
    assert [text for _, text in client.notices if text.startswith("Welcome")] == [
        hub.router.welcome_text()
    ]
    assert hub.security.get(ROOM).admission == ADMISSION_ACCEPTED
