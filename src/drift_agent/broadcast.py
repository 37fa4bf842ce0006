"""
Log Broadcaster

Serves a websocket endpoint and pushes every log line to all connected
subscribers.
"""

import asyncio
import logging
from typing import Optional, Set

import aiohttp
from aiohttp import web

logger = logging.getLogger(__name__)


class LogBroadcaster:
    """Websocket fan-out of log lines."""

    def __init__(self, host: str = "localhost", port: int = 8181):
        self.host = host
        self.port = port
        self.sockets: Set[web.WebSocketResponse] = set()
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._runner: Optional[web.AppRunner] = None
        self._pump: Optional[asyncio.Task] = None

    @property
    def uri(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def init(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        app = web.Application()
        app.router.add_get("/", self._handle)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        logger.info(f"Log broadcaster initialised at: {self.uri}")

    async def run(self) -> None:
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        if self.port == 0 and self._runner.addresses:
            self.port = self._runner.addresses[0][1]
        self._pump = asyncio.create_task(self._drain())
        logger.info(f"Log broadcaster running at: {self.uri}")

    async def stop(self) -> None:
        logger.info(f"Log broadcaster at: {self.uri}, stopping")
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
        for ws in list(self.sockets):
            await ws.close()
        if self._runner is not None:
            await self._runner.cleanup()

    def publish(self, message: str) -> None:
        """Queue a message for broadcast; safe to call from any thread."""
        if self._loop is None or self._queue is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, message)

    async def broadcast(self, message: str) -> None:
        for ws in list(self.sockets):
            try:
                await ws.send_str(message)
            except (ConnectionError, RuntimeError):
                self.sockets.discard(ws)

    async def _drain(self) -> None:
        while True:
            message = await self._queue.get()
            await self.broadcast(message)

    async def _handle(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.add(ws)
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self.broadcast(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"WebSocket error: {ws.exception()}")
        finally:
            self.sockets.discard(ws)
        return ws


class BroadcastHandler(logging.Handler):
    """Logging handler that forwards formatted records to a broadcaster."""

    def __init__(self, broadcaster: LogBroadcaster, level: int = logging.NOTSET):
        super().__init__(level)
        self.broadcaster = broadcaster

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.broadcaster.publish(self.format(record))
        except Exception:
            self.handleError(record)
