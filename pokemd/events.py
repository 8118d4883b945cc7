"""Inbound events produced by the chat session client."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class InviteEvent:
    room_id: str
    inviter: str
    member_count: int | None = None


@dataclass(frozen=True)
class MessageEvent:
    room_id: str
    sender: str
    body: str


@dataclass(frozen=True)
class SendAckEvent:
    correlation_id: str
    ok: bool
    event_id: str | None = None
    error: str | None = None


InboundEvent = Union[InviteEvent, MessageEvent, SendAckEvent]
