"""Standalone delivery used when a reply cannot be streamed into its card."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from feishubridge.reply.cards import build_unified_card
from feishubridge.utils.config import ChunkMode, FeishuConfig, RenderMode, TableMode
from feishubridge.utils.feishu_client import FeishuClient
from feishubridge.utils.text import chunk_text, convert_markdown_tables


@dataclass(frozen=True)
class DeliveryOptions:
    render_mode: RenderMode = "auto"
    table_mode: TableMode = "ascii"
    text_chunk_limit: int = 4000
    chunk_mode: ChunkMode = "length"

    @classmethod
    def from_config(cls, config: FeishuConfig) -> "DeliveryOptions":
        return cls(
            render_mode=config.render_mode,
            table_mode=config.markdown.table_mode,
            text_chunk_limit=config.text_chunk_limit,
            chunk_mode=config.chunk_mode,
        )


async def send_plain_text(
    client: FeishuClient,
    chat_id: str,
    text: str,
    *,
    options: DeliveryOptions,
    reply_to_message_id: Optional[str] = None,
) -> List[str]:
    """Convert tables, chunk, and send each chunk in order."""
    converted = convert_markdown_tables(text, options.table_mode)
    message_ids: List[str] = []
    for chunk in chunk_text(converted, options.text_chunk_limit, options.chunk_mode):
        message_ids.append(
            await client.send_text(chat_id, chunk, reply_to_message_id=reply_to_message_id)
        )
    return message_ids


async def deliver_standalone(
    client: FeishuClient,
    chat_id: str,
    text: str,
    *,
    options: DeliveryOptions,
    card: Optional[Dict[str, Any]] = None,
    reply_to_message_id: Optional[str] = None,
) -> Optional[str]:
    """Send ``text`` as one card, degrading to plain text chunks.

    ``card`` overrides the default body-only card, e.g. to keep a collapsed
    thinking panel. Returns the card's message id, or None when plain text
    was sent. Errors from the plain text path propagate.
    """
    if options.render_mode != "raw":
        if card is None:
            card = build_unified_card(reply_markdown=text)
        try:
            message_id = await client.send_card(
                chat_id, card, reply_to_message_id=reply_to_message_id
            )
            logger.debug(f"Standalone card sent: {message_id}")
            return message_id
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Standalone card failed, falling back to text: {exc}")

    await send_plain_text(
        client,
        chat_id,
        text,
        options=options,
        reply_to_message_id=reply_to_message_id,
    )
    return None
