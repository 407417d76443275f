"""Websocket transport delivering platform event envelopes as JSON text frames."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Protocol

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from feishubridge.realtime.dispatcher import EventDispatcher


class EventTransport(Protocol):
    """Connection owned by the supervisor.

    ``start`` performs the handshake and returns once events are flowing;
    it raises if the handshake fails. Teardown is split so auto-reconnect
    can be switched off before the socket is closed.
    """

    async def start(self, dispatcher: EventDispatcher) -> None:
        ...

    def disable_auto_reconnect(self) -> None:
        ...

    def terminate(self) -> None:
        ...


Connector = Callable[[str], Awaitable[Any]]


class WebSocketEventTransport:
    """Reads event envelopes from a websocket and feeds an ``EventDispatcher``."""

    def __init__(
        self,
        url: str,
        *,
        auto_reconnect: bool = True,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        connector: Optional[Connector] = None,
    ) -> None:
        if not url:
            raise ValueError("WebSocketEventTransport requires a url")
        self._url = url
        self._auto_reconnect = auto_reconnect
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._connector: Connector = connector or websockets.connect
        self._dispatcher: Optional[EventDispatcher] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._terminated = False

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    @property
    def running(self) -> bool:
        return self._reader_task is not None and not self._reader_task.done()

    async def start(self, dispatcher: EventDispatcher) -> None:
        if self._reader_task is not None:
            raise RuntimeError("WebSocketEventTransport already started")
        self._dispatcher = dispatcher
        ws = await self._connector(self._url)
        if self._terminated:
            logger.info("Realtime transport terminated during handshake, closing socket")
            await self._close_quietly(ws)
            return
        logger.info(f"Realtime websocket connected: {self._url}")
        self._reader_task = asyncio.create_task(self._reader(ws))

    def disable_auto_reconnect(self) -> None:
        self._auto_reconnect = False

    def terminate(self) -> None:
        self._terminated = True
        task = self._reader_task
        if task is not None and not task.done():
            task.cancel()

    async def _reader(self, ws) -> None:
        delay = self._reconnect_delay
        while ws is not None:
            try:
                async for raw in ws:
                    self._handle_frame(raw)
                logger.info("Realtime websocket closed by server")
            except ConnectionClosed as exc:
                logger.warning(f"Realtime websocket connection lost: {exc}")
            finally:
                await self._close_quietly(ws)
            ws = None

            while ws is None and self._auto_reconnect:
                await asyncio.sleep(delay)
                if not self._auto_reconnect:
                    break
                try:
                    ws = await self._connector(self._url)
                    delay = self._reconnect_delay
                    logger.info("Realtime websocket reconnected")
                except (OSError, WebSocketException) as exc:
                    delay = min(delay * 2, self._max_reconnect_delay)
                    logger.warning(f"Realtime reconnect failed, retrying in {delay:.1f}s: {exc}")

    def _handle_frame(self, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning("Dropping non-JSON realtime frame")
            return
        if not isinstance(envelope, dict) or self._dispatcher is None:
            return
        self._dispatcher.dispatch_envelope(envelope)

    @staticmethod
    async def _close_quietly(ws) -> None:
        try:
            await ws.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Realtime websocket close failed: {exc}")
