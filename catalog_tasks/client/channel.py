# catalog_tasks/client/channel.py

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from catalog_tasks.client.executor import TaskExecutor
from catalog_tasks.schemas.task import TaskStatusUpdate

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

Connect = Callable[[str], Awaitable[Any]]


class ReconciliationChannel:
    """
    Keeps one live push connection and feeds task outcomes into the executor.

    Every close the client did not ask for, a normal 1000 close from the
    server included, is retried with exponential backoff capped at
    ``max_delay``. Only an explicit :meth:`close` ends the loop.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        url: str,
        *,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        keepalive_interval: Optional[float] = None,
        sync_on_connect: bool = True,
        connect: Optional[Connect] = None,
    ):
        self.executor = executor
        self.url = url
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.keepalive_interval = keepalive_interval
        self.sync_on_connect = sync_on_connect
        self._connect = connect or websockets.connect

        self.connected = False
        self.connect_count = 0
        self.last_close_code: Optional[int] = None
        self.next_delay = initial_delay
        self.last_delay: Optional[float] = None

        self._ws = None
        self._closing = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def run(self) -> None:
        while not self._closing:
            try:
                ws = await self._connect(self.url)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"Failed to connect push channel {self.url}: {e}")
                await self._backoff()
                continue

            try:
                close_code = await self._serve(ws)
            except Exception:
                logger.exception("Push channel failed")
                close_code = ABNORMAL_CLOSURE
                self.last_close_code = close_code
                with contextlib.suppress(ConnectionClosed, OSError):
                    await ws.close()

            if self._closing:
                logger.info(f"Push channel closed ({close_code}), not reconnecting")
                break

            logger.warning(f"Push channel lost ({close_code}), reconnecting in {self.next_delay:.1f}s")
            await self._backoff()

    async def _serve(self, ws) -> Optional[int]:
        self._ws = ws
        self.connected = True
        self.connect_count += 1
        self.next_delay = self.initial_delay
        logger.info(f"Push channel connected to {self.url}")

        keepalive = None
        if self.keepalive_interval:
            keepalive = asyncio.get_running_loop().create_task(self._keepalive(ws))

        close_code = None
        try:
            if self.sync_on_connect:
                await self.executor.sync_from_backend()
            async for raw in ws:
                await self.handle_message(raw)
            close_code = getattr(ws, "close_code", None)
        except ConnectionClosed as e:
            close_code = e.rcvd.code if e.rcvd is not None else ABNORMAL_CLOSURE
        finally:
            self.connected = False
            self._ws = None
            if keepalive is not None:
                keepalive.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await keepalive

        self.last_close_code = close_code if close_code is not None else ABNORMAL_CLOSURE
        return self.last_close_code

    async def _backoff(self) -> None:
        delay = min(self.next_delay, self.max_delay)
        self.last_delay = delay
        self.next_delay = min(delay * 2, self.max_delay)
        await asyncio.sleep(delay)

    async def _keepalive(self, ws) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await ws.send(json.dumps({"type": "ping"}))
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Keep-alive not sent: {e}")
                return

    async def handle_message(self, raw: Any) -> None:
        """Route one inbound envelope; unknown or malformed messages are ignored"""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed push message")
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")

        if message_type == "task-status-update":
            try:
                update = TaskStatusUpdate.model_validate(message.get("payload") or {})
            except ValidationError as e:
                logger.warning(f"Ignoring invalid task-status-update: {e.errors()[:1]}")
                return
            self.executor.handle_status_update(update)

        elif message_type == "health-check":
            await self._send({"type": "health-ack"})

        elif message_type == "pong":
            logger.debug("Push channel pong")

        else:
            logger.debug(f"Ignoring push message of type {message_type!r}")

    async def _send(self, message: dict) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(json.dumps(message))
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Push channel send failed: {e}")

    async def close(self) -> None:
        """Close the connection for good; no reconnect is scheduled"""
        self._closing = True
        ws = self._ws
        if ws is not None:
            with contextlib.suppress(ConnectionClosed, OSError):
                await ws.close(code=NORMAL_CLOSURE, reason="Client shutting down")

        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.connected = False
