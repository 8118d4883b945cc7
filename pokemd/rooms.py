"""Room directory: turns a caller's room reference into a canonical room id.

Lookup order:
- configured names from the ``[rooms]`` table
- literal room ids (``!opaque:server``)
- literal room aliases (``#name:server.tld``, sigil optional). References arrive
  already percent-decoded by the HTTP layer
- ``default`` (or an empty reference) for the configured default room
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .constants import DEFAULT_ROOM_KEY, URGENT_SUFFIX
from .errors import UnresolvedRoom
from .util import is_room_alias, is_room_id, is_user_id

AliasResolver = Callable[[str], Awaitable["str | None"]]


@dataclass(frozen=True)
class RouteTarget:
    room_id: str
    reference: str
    mention_room: bool = False


class RoomDirectory:
    def __init__(
        self,
        names: dict[str, str] | None = None,
        resolver: AliasResolver | None = None,
    ) -> None:
        self.log = logging.getLogger("pokemd.rooms")
        self._names: dict[str, str] = dict(names or {})
        self._resolver = resolver
        self._alias_cache: dict[str, str] = {}

    def names_for(self, room_id: str) -> list[str]:
        """Configured names that point straight at ``room_id`` or at a cached alias of it."""
        out = []
        for name, value in self._names.items():
            if value == room_id or self._alias_cache.get(value) == room_id:
                out.append(name)
        return sorted(out)

    def learn_alias(self, alias: str, room_id: str) -> None:
        """Record an alias seen on the server. Existing mappings are never replaced."""
        known = self._alias_cache.get(alias)
        if known is None:
            self._alias_cache[alias] = room_id
        elif known != room_id:
            self.log.warning(
                "Alias %s now points at %s; keeping %s until restart", alias, room_id, known
            )

    async def resolve(self, reference: str, *, urgent: bool = False) -> RouteTarget:
        ref = reference.strip()

        if urgent:
            urgent_name = f"{ref}{URGENT_SUFFIX}"
            if urgent_name in self._names:
                room_id = await self._to_room_id(self._names[urgent_name], urgent_name)
                return RouteTarget(room_id=room_id, reference=urgent_name)
            # No dedicated urgent room: ping everyone in the regular one.
            room_id = await self._resolve_plain(ref)
            return RouteTarget(room_id=room_id, reference=ref, mention_room=True)

        room_id = await self._resolve_plain(ref)
        return RouteTarget(room_id=room_id, reference=ref)

    async def _resolve_plain(self, ref: str) -> str:
        if ref in self._names:
            return await self._to_room_id(self._names[ref], ref)

        if is_room_id(ref):
            return ref

        if ref and not is_user_id(ref):
            alias = ref if ref.startswith("#") else f"#{ref}"
            if is_room_alias(alias):
                return await self.resolve_alias(alias)

        if ref == "" and DEFAULT_ROOM_KEY in self._names:
            return await self._to_room_id(self._names[DEFAULT_ROOM_KEY], DEFAULT_ROOM_KEY)

        raise UnresolvedRoom(ref)

    async def _to_room_id(self, value: str, reference: str) -> str:
        if is_room_id(value):
            return value
        alias = value if value.startswith("#") else f"#{value}"
        if is_room_alias(alias):
            return await self.resolve_alias(alias)
        self.log.warning("Configured room %s has unusable value %r", reference, value)
        raise UnresolvedRoom(reference)

    async def resolve_alias(self, alias: str) -> str:
        cached = self._alias_cache.get(alias)
        if cached is not None:
            return cached
        if self._resolver is None:
            raise UnresolvedRoom(alias)
        try:
            room_id = await self._resolver(alias)
        except Exception as e:
            self.log.warning("Alias lookup failed alias=%s err=%s", alias, e)
            raise UnresolvedRoom(alias) from e
        if not room_id:
            raise UnresolvedRoom(alias)
        self.learn_alias(alias, room_id)
        return self._alias_cache[alias]
