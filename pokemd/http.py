"""HTTP listener: ``PUT|POST /<room>`` relays, ``GET /<room>`` serves a form."""

from __future__ import annotations

import html
import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse

from . import __version__
from .errors import RelayError
from .request import parse_poke_request

if TYPE_CHECKING:
    from .service import DaemonService

log = logging.getLogger("pokemd.http")

_FORM_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Pok'em</title>
<script>
  async function submitForm(event) {
    event.preventDefault();
    const ok = document.getElementById('success-message');
    const err = document.getElementById('error-message');
    ok.style.display = 'none';
    err.style.display = 'none';

    const room = document.getElementById('room').value;
    const message = document.getElementById('message').value;
    if (!room || !message) {
      err.textContent = 'Please fill in both fields.';
      err.style.display = 'block';
      return;
    }
    try {
      const response = await fetch('/' + encodeURIComponent(room), {
        method: 'POST',
        headers: {'Content-Type': 'text/plain'},
        body: message
      });
      if (response.ok) {
        ok.textContent = 'Message sent successfully!';
        ok.style.display = 'block';
      } else {
        err.textContent = 'Failed to send message. Status: ' + response.status;
        err.style.display = 'block';
      }
    } catch (error) {
      err.textContent = 'Error sending message: ' + error.message;
      err.style.display = 'block';
    }
  }
</script>
</head>
<body>
<h2>Pok'em!</h2>
<h3>Provide the Room and Message and we'll Poke Them for you.</h3>
<form onsubmit="submitForm(event);">
  <label for="room">Room:</label><br>
  <input type="text" id="room" size="30" maxlength="256" value="{room}"><br>
  <label for="message">Message:</label><br>
  <textarea id="message" rows="4" cols="50" maxlength="1024"></textarea><br><br>
  <input type="submit" value="Submit">
</form>
<div id="success-message" style="color: green; display: none;"></div>
<div id="error-message" style="color: red; display: none;"></div>
</body>
</html>
"""


def render_form(room: str) -> str:
    return _FORM_PAGE.replace("{room}", html.escape(room, quote=True))


def create_app(hub: DaemonService) -> FastAPI:
    app = FastAPI(title="pokemd", version=__version__, docs_url=None, redoc_url=None)
    app.state.hub = hub

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> PlainTextResponse:
        log.warning(
            "Relay failed path=%s status=%s err=%s", request.url.path, exc.status, exc
        )
        return PlainTextResponse(exc.public_message, status_code=exc.status)

    @app.get("/{room_ref:path}", response_class=HTMLResponse)
    async def web_form(room_ref: str) -> HTMLResponse:
        return HTMLResponse(render_form(room_ref))

    @app.api_route("/{room_ref:path}", methods=["PUT", "POST"])
    async def poke(room_ref: str, request: Request) -> PlainTextResponse:
        body = await request.body()
        relay_request = parse_poke_request(
            room_ref, request.headers, request.query_params, body
        )
        await hub.relay.relay(relay_request)
        return PlainTextResponse("OK")

    return app
