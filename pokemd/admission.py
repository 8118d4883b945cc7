"""Invite admission policy for the pokemd account."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass

from .events import InviteEvent


class Verdict(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPT


class AdmissionController:
    """
    Decides which invites the account accepts.

    Handles:
    - the inviter allow list (a regular expression over user ids)
    - the room size ceiling (0 means unlimited)
    """

    def __init__(self, allow_list: str | None, room_size_limit: int = 0) -> None:
        self.log = logging.getLogger("pokemd.admission")
        self.allow_list = allow_list or None
        self.room_size_limit = max(0, int(room_size_limit or 0))
        self._allow_re = re.compile(self.allow_list) if self.allow_list else None

    def is_allowed(self, user_id: str) -> bool:
        if self._allow_re is None:
            return True
        return self._allow_re.fullmatch(user_id) is not None

    def check_size(self, member_count: int | None) -> Decision:
        if self.room_size_limit <= 0 or member_count is None:
            return Decision(Verdict.ACCEPT)
        if member_count > self.room_size_limit:
            return Decision(
                Verdict.REJECT,
                f"room has {member_count} members, limit is {self.room_size_limit}",
            )
        return Decision(Verdict.ACCEPT)

    def decide(self, invite: InviteEvent) -> Decision:
        if not self.is_allowed(invite.inviter):
            return Decision(Verdict.REJECT, f"inviter {invite.inviter} not on the allow list")
        return self.check_size(invite.member_count)

    def describe(self) -> str:
        limit = str(self.room_size_limit) if self.room_size_limit > 0 else "unlimited"
        return f"allow list: {self.allow_list or '(anyone)'}, room size limit: {limit}"
