"""Ownership of the single live realtime connection."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from loguru import logger

from feishubridge.agent import MessageHandler
from feishubridge.realtime.dedup import DedupCache
from feishubridge.realtime.router import EventRouter
from feishubridge.realtime.transport import EventTransport, WebSocketEventTransport
from feishubridge.utils.config import ConfigError, FeishuConfig

TransportFactory = Callable[[FeishuConfig], EventTransport]


def websocket_transport_factory(config: FeishuConfig) -> EventTransport:
    if not config.event_stream_url:
        raise ConfigError("FEISHU_EVENT_STREAM_URL is required for websocket mode")
    return WebSocketEventTransport(config.event_stream_url)


def force_stop_transport(transport: EventTransport) -> None:
    """Best-effort teardown: stop reconnects first, then drop the socket."""
    try:
        transport.disable_auto_reconnect()
        transport.terminate()
        logger.info("Previous realtime transport force-stopped")
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Best-effort realtime transport cleanup failed: {exc}")


class RealtimeSupervisor:
    """Keeps at most one authoritative realtime connection per process.

    Every ``start_connection`` bumps the session generation. Routers capture
    the generation they were built with and turn into no-ops once it moves
    on, whether or not the old socket actually closed.

    The dedup cache lives as long as the supervisor, so reconnect storms do
    not replay recently seen messages.
    """

    def __init__(
        self,
        transport_factory: Optional[TransportFactory] = None,
        *,
        dedup: Optional[DedupCache] = None,
    ) -> None:
        self._transport_factory = transport_factory or websocket_transport_factory
        self.dedup = dedup or DedupCache()
        self._generation = 0
        self._current: Optional[EventTransport] = None
        self._current_retired: Optional[asyncio.Event] = None
        self._router: Optional[EventRouter] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current(self) -> Optional[EventTransport]:
        return self._current

    @property
    def router(self) -> Optional[EventRouter]:
        return self._router

    def is_current(self, session: int) -> bool:
        return session == self._generation

    def _retire_current(self) -> None:
        if self._current is not None:
            force_stop_transport(self._current)
            self._current = None
        if self._current_retired is not None:
            self._current_retired.set()
            self._current_retired = None
        self._router = None

    async def start_connection(
        self,
        config: FeishuConfig,
        handler: MessageHandler,
        *,
        bot_open_id: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> None:
        """Run one realtime connection until aborted, superseded or cancelled.

        Raises whatever the handshake raises, after tearing the transport down.
        """
        self._generation += 1
        session = self._generation

        if self._current is not None:
            logger.info("Stopping previous realtime connection before starting a new one")
            self._retire_current()

        logger.info(f"Starting realtime connection (session {session})")
        transport = self._transport_factory(config)
        retired = asyncio.Event()
        router = EventRouter(
            self,
            session=session,
            config=config,
            handler=handler,
            bot_open_id=bot_open_id,
        )
        self._current = transport
        self._current_retired = retired
        self._router = router

        def cleanup() -> None:
            if self._current is transport:
                self._retire_current()

        if abort is not None and abort.is_set():
            cleanup()
            return

        try:
            await transport.start(router.build_dispatcher())
        except asyncio.CancelledError:
            cleanup()
            raise
        except Exception as exc:
            logger.error(f"Realtime connection failed to start: {exc}")
            cleanup()
            raise

        if not self.is_current(session):
            # Retired while the handshake was pending; nobody else holds it now.
            logger.info(f"Realtime session {session} retired during handshake")
            force_stop_transport(transport)
            return

        logger.info(f"Realtime connection started (session {session})")

        waiters = [asyncio.ensure_future(retired.wait())]
        if abort is not None:
            waiters.append(asyncio.ensure_future(abort.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if abort is not None and abort.is_set():
                logger.info("Abort received, stopping realtime connection")
            else:
                logger.info(f"Realtime session {session} superseded")
        finally:
            for waiter in waiters:
                waiter.cancel()
            cleanup()

    def stop_connection(self) -> None:
        """Retire every pending callback and tear down the current transport."""
        self._generation += 1
        self._retire_current()
