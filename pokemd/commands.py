"""In-room administrative commands for pokemd."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .constants import AUTH_KEYS
from .errors import PersistenceError, RelayError
from .events import MessageEvent
from .relay import RelayRequest

if TYPE_CHECKING:
    from .service import DaemonService


class CommandHandler:
    """Handles ``<prefix> <verb> ...`` messages posted in a room.

    Any member of the room may run these; the room itself is the trust
    boundary.
    """

    def __init__(self, hub: DaemonService) -> None:
        self.hub = hub
        self.log = logging.getLogger("pokemd.commands")

    @property
    def prefix(self) -> str:
        return self.hub.config.command_prefix

    def parse(self, text: str) -> list[str] | None:
        """Split a command line into words, or None if it is not addressed to us."""
        cmdline = text.strip()
        if not cmdline.startswith(self.prefix):
            return None
        rest = cmdline[len(self.prefix):]
        if rest and not rest[0].isspace():
            return None
        return rest.split()

    async def handle(self, evt: MessageEvent) -> str | None:
        """Run a command. Returns the reply to post in the room, if any."""
        parts = self.parse(evt.body)
        if parts is None:
            return None
        if not parts:
            return self.help_text()

        cmd = parts[0].lower()
        self.log.debug("Command room=%s sender=%s cmd=%s", evt.room_id, evt.sender, cmd)

        try:
            if cmd == "set":
                return self._set(evt, parts[1:])
            if cmd == "block":
                return self._set_block(evt.room_id, True)
            if cmd == "unblock":
                return self._set_block(evt.room_id, False)
        except PersistenceError as e:
            self.log.error("Command failed room=%s cmd=%s: %s", evt.room_id, cmd, e)
            return "ERROR: the change could not be saved and was not applied."

        if cmd == "info":
            return await self.info_text(evt.room_id)
        if cmd == "poke":
            return self._poke(evt)
        return self.help_text()

    def _set(self, evt: MessageEvent, args: list[str]) -> str:
        key = args[0].lower() if args else ""
        value = args[1] if len(args) > 1 else ""

        if key == "block":
            if not value:
                return f"Block cannot be empty\n`{self.prefix} set block [on|off]`"
            if value.lower() == "on":
                return self._set_block(evt.room_id, True)
            if value.lower() == "off":
                return self._set_block(evt.room_id, False)
            return "Invalid value, use 'on' or 'off'"

        if key in AUTH_KEYS:
            if not value:
                return f"Token cannot be empty\n`{self.prefix} set auth [off|token]`"
            if value.lower() == "on":
                return "Tried setting the Auth Token to 'on', that was probably an accident"
            if value.lower() == "off":
                self.hub.security.set_token(evt.room_id, None, evt.sender)
                return "Auth Token removed"
            self.hub.security.set_token(evt.room_id, value, evt.sender)
            return f"Auth Token set to {value}"

        rec = self.hub.security.get(evt.room_id)
        lines = [
            "Usage:",
            f"`{self.prefix} set [block|auth] <on|off|token>`",
            "Current values:",
            f"- block: {'on' if rec.block else 'off'}",
        ]
        if rec.auth is not None:
            lines.append(f"- Authentication Token: {rec.auth}")
        return "\n".join(lines)

    def _set_block(self, room_id: str, blocked: bool) -> str:
        self.hub.security.set_blocked(room_id, blocked)
        if blocked:
            return (
                "Pok'em has been blocked from sending messages to this room.\n"
                f"Send `{self.prefix} unblock` to allow messages again."
            )
        return "Pok'em has been unblocked from sending messages to this room."

    def _poke(self, evt: MessageEvent) -> str | None:
        # "<prefix> poke <room> <message...>", keeping the message whitespace.
        rest = evt.body.strip()[len(self.prefix):].split(None, 2)
        if len(rest) < 3:
            return f"Usage: `{self.prefix} poke <room> <message>`"
        request = RelayRequest(room=rest[1], message=rest[2])
        # The command answers only on failure, once the relay has settled.
        self.hub.spawn(self._run_poke(evt.room_id, request), name="poke")
        return None

    async def _run_poke(self, reply_room: str, request: RelayRequest) -> None:
        try:
            await self.hub.relay.relay(request)
        except RelayError as e:
            self.log.warning("Poke failed target=%s: %s", request.room, e)
            await self.hub.reply(reply_room, f"Failed to send message: {e}")

    async def info_text(self, room_id: str) -> str:
        lines = [f"This Room's ID is: {room_id}"]
        alias = await self.hub.client.get_canonical_alias(room_id)
        if alias:
            self.hub.directory.learn_alias(alias, room_id)
            lines.append(f"This Room's Alias is: {alias}")
        names = self.hub.directory.names_for(room_id)
        if names:
            lines.append(f"Configured names: {', '.join(names)}")

        rec = self.hub.security.get(room_id)
        if rec.auth is not None:
            lines.append(f"This Room's Authentication token is: {rec.auth}")
        else:
            lines.append("No Authentication token is set")
        lines.append(f"Blocked: {'on' if rec.block else 'off'}")

        members = str(rec.member_count) if rec.member_count is not None else "unknown"
        lines.append(
            f"Admission: {rec.admission or 'accepted'}; {self.hub.admission.describe()}; "
            f"members: {members}"
        )
        return "\n".join(lines)

    def help_text(self) -> str:
        p = self.prefix
        return "\n".join(
            [
                "Pok'em commands:",
                f"- `{p} info`: show this room's id, alias and settings",
                f"- `{p} set auth <token|off>`: require a token to send here",
                f"- `{p} set block <on|off>`: stop or allow notifications",
                f"- `{p} block` / `{p} unblock`: same as `set block`",
                f"- `{p} poke <room> <message>`: send a message to another room",
                f"- `{p} help`: show this help",
            ]
        )
