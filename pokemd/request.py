"""Turn an inbound HTTP call into a ``RelayRequest``.

A body that parses as a JSON object with a ``topic`` is taken as a structured
request. Anything else is the message text, with title, priority and the rest
taken from query parameters first and headers second.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping

from pydantic import BaseModel, ValidationError, field_validator

from .constants import (
    H_AUTH,
    H_FORMAT,
    H_MESSAGE,
    H_PRIORITY,
    H_TAGS,
    H_TITLE,
    PRIORITY_NAMES,
)
from .errors import InvalidBody
from .relay import RelayRequest

log = logging.getLogger("pokemd.request")


def parse_priority(value: str | int | None) -> int | None:
    """Numeric priority or one of ``min|low|default|high|urgent|max``; None if unusable."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    if text in PRIORITY_NAMES:
        return PRIORITY_NAMES[text]
    log.debug("Ignoring unknown priority %r", value)
    return None


def split_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


class PokeJSONBody(BaseModel):
    topic: str
    message: str = ""
    title: str | None = None
    priority: int | None = None
    tags: list[str] | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def named_priority(cls, v):
        return parse_priority(v)


def _lookup(source: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = source.get(name)
        if value is not None:
            return value
    return None


def _parse_json(body: str) -> PokeJSONBody | None:
    text = body.strip()
    if not text.startswith("{"):
        return None
    try:
        return PokeJSONBody.model_validate(json.loads(text))
    except (ValueError, ValidationError):
        return None


def parse_poke_request(
    room_ref: str,
    headers: Mapping[str, str],
    query: Mapping[str, str],
    body: bytes,
) -> RelayRequest:
    """Build the relay request for ``PUT|POST /<room_ref>``.

    ``headers`` must be case-insensitive (as Starlette's are); query keys are
    matched lowercased.
    """
    query = {k.lower(): v for k, v in query.items()}

    token = _lookup(headers, H_AUTH)
    fmt = _lookup(query, H_FORMAT) or _lookup(headers, H_FORMAT)

    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidBody(f"body is not UTF-8: {e}") from e

    structured = _parse_json(text)
    if structured is not None:
        return RelayRequest(
            room=structured.topic or room_ref,
            message=structured.message,
            token=token,
            title=structured.title,
            priority=structured.priority,
            format=fmt,
            tags=tuple(structured.tags or ()),
        )

    # An explicit message parameter wins over the body.
    message = _lookup(query, H_MESSAGE)
    if message is None:
        message = _lookup(headers, H_MESSAGE)
    if message is None:
        message = text

    return RelayRequest(
        room=room_ref,
        message=message,
        token=token,
        title=_lookup(query, H_TITLE) or _lookup(headers, H_TITLE),
        priority=parse_priority(_lookup(query, H_PRIORITY) or _lookup(headers, H_PRIORITY)),
        format=fmt,
        tags=tuple(split_tags(_lookup(query, H_TAGS) or _lookup(headers, H_TAGS))),
    )
