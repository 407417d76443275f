"""Reply rendering and delivery for the Feishu bridge."""

from feishubridge.reply.cards import ReplyRenderState, build_unified_card, render_reply_card
from feishubridge.reply.delivery import DeliveryOptions, deliver_standalone, send_plain_text
from feishubridge.reply.dispatcher import ReplyDispatcher
from feishubridge.reply.streaming_card import PatchState, StreamingCardReply
from feishubridge.reply.typing import TypingIndicator

__all__ = [
    "DeliveryOptions",
    "PatchState",
    "ReplyDispatcher",
    "ReplyRenderState",
    "StreamingCardReply",
    "TypingIndicator",
    "build_unified_card",
    "deliver_standalone",
    "render_reply_card",
    "send_plain_text",
]
