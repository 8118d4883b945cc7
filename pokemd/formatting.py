"""Message rendering. Pure functions, applied once before sending."""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

import emoji

from .constants import FORMAT_MARKDOWN, FORMAT_PLAIN, ROOM_MENTION

log = logging.getLogger("pokemd.formatting")


@dataclass(frozen=True)
class RenderedMessage:
    body: str
    html: str | None = None
    mention_room: bool = False


def markdown_to_html(text: str) -> str:
    """Small Markdown subset: code blocks, inline code, bold, italic, links."""
    text = html.escape(text, quote=False)
    text = re.sub(r"```(\w*)\n(.*?)```", r"<pre><code>\2</code></pre>", text, flags=re.DOTALL)
    text = re.sub(r"`([^`]+)`", r"<code>\1</code>", text)
    text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"(?<![\w*])\*(?!\s)(.+?)(?<!\s)\*(?![\w*])", r"<em>\1</em>", text)
    text = re.sub(r"\[([^\]]+)\]\((https?://[^)\s]+)\)", r'<a href="\2">\1</a>', text)
    return text.replace("\n", "<br>")


def tag_emojis(tags: Iterable[str] | None) -> str:
    """Emoji for each tag that is a known shortcode (``warning``, ``skull``), joined."""
    out = []
    for tag in tags or ():
        code = f":{tag.strip().strip(':')}:"
        glyph = emoji.emojize(code, language="alias")
        if glyph == code:
            log.debug("No emoji for tag %r", tag)
            continue
        out.append(glyph)
    return "".join(out)


def render(
    message: str,
    *,
    title: str | None = None,
    tags: Iterable[str] | None = None,
    fmt: str = FORMAT_MARKDOWN,
    mention_room: bool = False,
) -> RenderedMessage:
    body = message
    if title:
        body = f"**{title}**\n\n{body}"
    emojis = tag_emojis(tags)
    if emojis:
        body = f"{emojis} {body}"
    if mention_room:
        body = f"{ROOM_MENTION}: {body}"

    kind = (fmt or FORMAT_MARKDOWN).strip().lower()
    if kind == FORMAT_PLAIN:
        return RenderedMessage(body=body, mention_room=mention_room)
    if kind != FORMAT_MARKDOWN:
        log.error("Unknown format: %s", fmt)
    return RenderedMessage(body=body, html=markdown_to_html(body), mention_room=mention_room)
