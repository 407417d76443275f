"""Handlers registered on the active realtime connection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Dict, List, Optional

from loguru import logger

from feishubridge.agent import HistoryEntry, InboundContext, MessageHandler
from feishubridge.realtime.dispatcher import EventDispatcher
from feishubridge.utils.config import FeishuConfig

if TYPE_CHECKING:
    from feishubridge.realtime.supervisor import RealtimeSupervisor

MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"
MESSAGE_READ_EVENT = "im.message.message_read_v1"
BOT_ADDED_EVENT = "im.chat.member.bot.added_v1"
BOT_REMOVED_EVENT = "im.chat.member.bot.deleted_v1"


class EventRouter:
    """Per-connection event handlers, gated on the connection's session.

    The stale-session and dedup checks in ``on_message_receive`` run before
    anything is awaited, so back-to-back redeliveries always observe each
    other's dedup entry.
    """

    def __init__(
        self,
        supervisor: "RealtimeSupervisor",
        *,
        session: int,
        config: FeishuConfig,
        handler: MessageHandler,
        bot_open_id: Optional[str] = None,
    ) -> None:
        self._supervisor = supervisor
        self.session = session
        self._config = config
        self._handler = handler
        self._bot_open_id = bot_open_id
        self.chat_histories: Dict[str, List[HistoryEntry]] = {}

    @property
    def is_stale(self) -> bool:
        return not self._supervisor.is_current(self.session)

    def build_dispatcher(self) -> EventDispatcher:
        return EventDispatcher().register(
            {
                MESSAGE_RECEIVE_EVENT: self.on_message_receive,
                MESSAGE_READ_EVENT: self.on_message_read,
                BOT_ADDED_EVENT: self.on_bot_added,
                BOT_REMOVED_EVENT: self.on_bot_removed,
            }
        )

    def on_message_receive(self, event: Dict[str, Any]) -> Optional[Awaitable[None]]:
        if self.is_stale:
            logger.debug(f"Ignoring message for retired session {self.session}")
            return None

        message = event.get("message") or {}
        message_id = message.get("message_id") if isinstance(message, dict) else None
        # Events without an id skip dedup and are processed every time.
        if message_id:
            if not self._supervisor.dedup.check_and_record(message_id):
                logger.info(f"Ignoring duplicate message {message_id}")
                return None

        context = InboundContext(
            config=self._config,
            event=event,
            bot_open_id=self._bot_open_id,
            chat_histories=self.chat_histories,
        )
        return self._forward(context, message_id)

    async def _forward(self, context: InboundContext, message_id: Optional[str]) -> None:
        try:
            await self._handler(context)
        except Exception:  # noqa: BLE001
            logger.exception(f"Error handling message event {message_id}")

    def on_message_read(self, event: Dict[str, Any]) -> None:
        return None

    def on_bot_added(self, event: Dict[str, Any]) -> None:
        logger.info(f"Bot added to chat {event.get('chat_id')}")

    def on_bot_removed(self, event: Dict[str, Any]) -> None:
        logger.info(f"Bot removed from chat {event.get('chat_id')}")
