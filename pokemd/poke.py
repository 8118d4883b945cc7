"""One-shot sender: post a message to a running pokemd over HTTP."""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

log = logging.getLogger("pokemd.poke")


class PokeFailed(Exception):
    def __init__(self, status: int | None, detail: str) -> None:
        super().__init__(f"{status or '-'}: {detail}")
        self.status = status
        self.detail = detail


def build_url(server_url: str, room: str, port: int | None = None) -> str:
    base = server_url.rstrip("/")
    if not base.startswith(("http://", "https://")):
        base = f"http://{base}"
    if port:
        base = f"{base}:{port}"
    return f"{base}/{quote(room, safe='')}"


def poke_server(
    server_url: str,
    room: str,
    message: str,
    *,
    port: int | None = None,
    token: str | None = None,
    title: str | None = None,
    priority: str | None = None,
    timeout: float = 60.0,
    transport: httpx.BaseTransport | None = None,
) -> str:
    """POST ``message`` to ``<server>/<room>``. Returns the response body."""
    url = build_url(server_url, room, port)
    headers: dict[str, str] = {"content-type": "text/plain; charset=utf-8"}
    if token:
        headers["authentication"] = token
    if title:
        headers["x-title"] = title
    if priority:
        headers["x-priority"] = str(priority)

    with httpx.Client(timeout=timeout, transport=transport) as client:
        try:
            res = client.post(url, content=message.encode("utf-8"), headers=headers)
        except httpx.HTTPError as e:
            raise PokeFailed(None, str(e)) from e

    if res.is_success:
        log.info("Sent to %s", url)
        return res.text
    raise PokeFailed(res.status_code, res.text.strip() or res.reason_phrase)
