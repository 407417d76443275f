"""Maps agent reply callbacks onto a streaming card and a typing indicator."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from loguru import logger

from feishubridge.reply.delivery import DeliveryOptions
from feishubridge.reply.streaming_card import StreamingCardReply
from feishubridge.reply.typing import TypingIndicator
from feishubridge.utils.config import FeishuConfig
from feishubridge.utils.feishu_client import FeishuClient


class ReplyDispatcher:
    """The ``ReplySink`` handed to an agent for one inbound message."""

    def __init__(
        self,
        client: FeishuClient,
        config: FeishuConfig,
        *,
        chat_id: str,
        reply_to_message_id: Optional[str] = None,
        reply: Optional[StreamingCardReply] = None,
        typing: Optional[TypingIndicator] = None,
    ) -> None:
        self.chat_id = chat_id
        self.reply = reply or StreamingCardReply(
            client,
            chat_id,
            reply_to_message_id=reply_to_message_id,
            streaming=config.streaming,
            delivery=DeliveryOptions.from_config(config),
        )
        self.typing = typing or TypingIndicator(client, reply_to_message_id)

    async def on_reply_start(self) -> None:
        await self.typing.start()

    def on_reasoning_stream(self, payload: Mapping[str, Any]) -> None:
        text = payload.get("text")
        if isinstance(text, str) and text:
            self.reply.on_reasoning(text)

    def on_agent_event(self, event: Mapping[str, Any]) -> None:
        if event.get("stream") != "tool":
            return
        data = event.get("data") or {}
        phase = data.get("phase")
        tool_call_id = data.get("toolCallId")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            return

        if phase == "start":
            name = data.get("name") if isinstance(data.get("name"), str) else ""
            args = data.get("args")
            self.reply.on_tool_start(
                tool_call_id, name, args if isinstance(args, dict) else None
            )
        elif phase == "result":
            self.reply.on_tool_end(tool_call_id, failed=bool(data.get("isError")))

    async def deliver(self, text: str, kind: str = "final") -> None:
        logger.debug(f"Deliver kind={kind} len={len(text or '')}")
        await self.reply.on_text(text or "", final=kind == "final")

    def on_skip(self, reason: Optional[str] = None) -> None:
        logger.info(f"Skipped reply in {self.chat_id} (reason={reason})")

    async def on_error(self, error: BaseException, kind: str = "final") -> None:
        logger.error(f"{kind} reply in {self.chat_id} failed: {error}")
        self.reply.cancel_pending()
        await self.typing.stop()

    async def on_idle(self) -> None:
        try:
            await self.reply.on_idle()
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Idle delivery in {self.chat_id} failed: {exc}")
        finally:
            await self.typing.stop()

    def snapshot(self) -> Dict[str, Any]:
        state = self.reply.state
        return {
            "card_message_id": state.card_message_id,
            "patch_state": str(self.reply.patch_state),
            "text_length": len(state.accumulated_text),
            "tools": len(state.completed_tools),
        }
