from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

import uvicorn

from .admission import AdmissionController
from .commands import CommandHandler
from .config import DaemonRuntimeConfig
from .errors import PersistenceError, RelayError
from .http import create_app
from .matrix import ChatSessionClient, MatrixSessionClient
from .relay import RelayCore
from .rooms import RoomDirectory
from .router import EventRouter
from .state import SecurityState
from .store import SessionStateStore


class DaemonService:
    """Owns the single Matrix session and everything hanging off it."""

    def __init__(
        self,
        config: DaemonRuntimeConfig,
        *,
        client: ChatSessionClient | None = None,
        store: SessionStateStore | None = None,
        password: str | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("pokemd.daemon")

        self.store = store if store is not None else SessionStateStore(config.state_path)
        self.session, rooms = self.store.load()

        self.security = SecurityState(self.store)
        self.security.load(rooms)

        if client is None:
            client = MatrixSessionClient(config, self.store, self.session, password=password)
        self.client = client

        self.directory = RoomDirectory(config.rooms, resolver=self.client.resolve_alias)
        self.admission = AdmissionController(config.allow_list, config.room_size_limit)
        self.relay = RelayCore(
            self.client,
            self.directory,
            self.security,
            default_format=config.format,
            send_timeout_s=config.send_timeout_s,
        )

        # Inbound event dispatch and in-room commands
        self.command_handler = CommandHandler(self)
        self.router = EventRouter(self)

        self._tasks: set[asyncio.Task] = set()
        self._consumer: asyncio.Task | None = None
        self._server: uvicorn.Server | None = None

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        """Run ``coro`` in a tracked background task; failures are logged."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(
                "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    async def reply(self, room_id: str, text: str) -> None:
        try:
            await self.client.send_notice(room_id, text)
        except Exception as e:
            self.log.warning("Reply failed room=%s: %s", room_id, e)

    async def start(self) -> None:
        self.log.info("Starting pokemd homeserver=%s", self.config.homeserver_url or "-")
        await self.client.start()
        self.log.info("Matrix session ready user=%s", self.client.user_id)
        await self._merge_default_tokens()
        self._consumer = asyncio.create_task(self.router.consume(), name="event-consumer")

    async def _merge_default_tokens(self) -> None:
        tokens: dict[str, str] = {}
        for reference, token in self.config.auth.items():
            try:
                target = await self.directory.resolve(reference)
            except RelayError as e:
                self.log.warning("Ignoring [auth] entry %r: %s", reference, e)
                continue
            tokens[target.room_id] = token
        try:
            self.security.merge_defaults(tokens)
        except PersistenceError as e:
            self.log.error("Configured tokens not saved: %s", e)

    async def run(self) -> None:
        try:
            await self.start()
        except BaseException:
            await self.client.stop()
            raise

        app = create_app(self)
        server_config = uvicorn.Config(
            app,
            host=self.config.addr,
            port=int(self.config.port),
            log_config=None,
            access_log=False,
        )
        self._server = uvicorn.Server(server_config)
        self.log.info("Listening on http://%s:%s", self.config.addr, self.config.port)
        try:
            await self._server.serve()
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        for task in list(self._tasks):
            task.cancel()
        await self.client.stop()
        self.log.info("pokemd stopped")

    def run_forever(self) -> None:
        # uvicorn installs its own SIGINT/SIGTERM handlers while serving.
        asyncio.run(self.run())
