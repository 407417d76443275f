"""Event-type to handler dispatch for realtime event envelopes."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from loguru import logger

EventHandler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class EventDispatcher:
    """Routes decoded events to the handler registered for their type.

    Handlers are invoked synchronously in delivery order. A handler may
    return an awaitable, which is then run as a task; failures in either
    phase are logged and never reach the transport.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, EventHandler] = {}
        self._tasks: Set[asyncio.Task] = set()

    def register(self, handlers: Mapping[str, EventHandler]) -> "EventDispatcher":
        self._handlers.update(handlers)
        return self

    @property
    def event_types(self) -> Set[str]:
        return set(self._handlers)

    def dispatch(self, event_type: str, payload: Dict[str, Any]) -> Optional[asyncio.Task]:
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"No handler registered for event {event_type}")
            return None

        try:
            result = handler(payload)
        except Exception:  # noqa: BLE001
            logger.exception(f"Handler for {event_type} failed")
            return None

        if not inspect.isawaitable(result):
            return None

        task = asyncio.ensure_future(self._await_handler(result, event_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def dispatch_envelope(self, envelope: Mapping[str, Any]) -> Optional[asyncio.Task]:
        """Dispatch a schema 2.0 envelope: ``{"header": {"event_type"}, "event": {...}}``."""
        header = envelope.get("header") or {}
        event_type = header.get("event_type") if isinstance(header, Mapping) else None
        if not isinstance(event_type, str) or not event_type:
            logger.debug("Dropping envelope without event_type")
            return None
        event = envelope.get("event") or {}
        if not isinstance(event, dict):
            event = {"value": event}
        return self.dispatch(event_type, event)

    async def drain(self) -> None:
        """Wait for every handler task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _await_handler(self, awaitable: Awaitable[Any], event_type: str) -> None:
        try:
            await awaitable
        except Exception:  # noqa: BLE001
            logger.exception(f"Handler coroutine for {event_type} failed")
