from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Final, Protocol

import aiohttp

from shared.errors import TransportError

logger = logging.getLogger("ChatLink.Transport")

NORMAL_CLOSURE: Final[int] = 1000
ABNORMAL_CLOSURE: Final[int] = 1006


class TransportListener(Protocol):
    def on_open(self) -> None: ...

    def on_message(self, data: str) -> None: ...

    def on_close(self, code: int, reason: str) -> None: ...

    def on_error(self, error: BaseException) -> None: ...


class Transport(Protocol):
    def open(self, url: str, listener: TransportListener) -> None: ...

    def send(self, data: str) -> None: ...

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None: ...


TransportFactory = Callable[[], Transport]


class AiohttpTransport:
    """Websocket-транспорт на aiohttp: один объект на одну попытку соединения."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        max_msg_size: int = 4 * 1024 * 1024,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._max_msg_size = max_msg_size
        self._listener: TransportListener | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._outgoing: asyncio.Queue[str] = asyncio.Queue()
        self._run_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closing

    def open(self, url: str, listener: TransportListener) -> None:
        if self._run_task is not None:
            raise TransportError("transport already opened")
        self._listener = listener
        loop = asyncio.get_running_loop()
        self._run_task = loop.create_task(self._run(url))

    def send(self, data: str) -> None:
        if not self.is_open:
            raise TransportError("transport is not open")
        self._outgoing.put_nowait(data)

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("close requested without running loop; nothing to shut down")
            return
        self._close_task = loop.create_task(self._shutdown(code, reason))

    async def _run(self, url: str) -> None:
        session = self._session
        if session is None:
            session = aiohttp.ClientSession()
            self._session = session
        try:
            try:
                ws = await session.ws_connect(url, max_msg_size=self._max_msg_size)
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
                logger.warning("websocket connect to %s failed: %s", url, exc)
                self._report_error(exc)
                self._report_close(ABNORMAL_CLOSURE, str(exc))
                return
            if self._closing:
                await ws.close(code=NORMAL_CLOSURE)
                return
            self._ws = ws
            self._writer_task = asyncio.create_task(self._write_loop(ws))
            if self._listener is not None:
                self._listener.on_open()
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._report_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._report_message(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._report_error(ws.exception() or TransportError("websocket error"))
            code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
            self._report_close(code, "")
        finally:
            if self._writer_task is not None:
                self._writer_task.cancel()
            if self._owns_session and session is not None and not session.closed:
                await session.close()

    async def _write_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        while True:
            data = await self._outgoing.get()
            try:
                await ws.send_str(data)
            except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
                logger.warning("websocket send failed: %s", exc)
                self._report_error(exc)
                self._report_close(ABNORMAL_CLOSURE, f"send failed: {exc}")
                # later send() calls must fail so the caller keeps its frames queued
                self.close(NORMAL_CLOSURE, "send failed")
                return

    async def _shutdown(self, code: int, reason: str) -> None:
        ws = self._ws
        if ws is not None and not ws.closed:
            try:
                await ws.close(code=code, message=reason.encode("utf-8"))
            except (aiohttp.ClientError, ConnectionResetError, RuntimeError):
                logger.debug("websocket close failed", exc_info=True)
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()

    def _report_message(self, data: str) -> None:
        if self._closing or self._listener is None:
            return
        self._listener.on_message(data)

    def _report_error(self, error: BaseException) -> None:
        if self._closing or self._listener is None:
            return
        self._listener.on_error(error)

    def _report_close(self, code: int, reason: str) -> None:
        if self._closing or self._listener is None:
            return
        self._listener.on_close(code, reason)
