"""Realtime event stream handling for the Feishu bridge."""

from feishubridge.realtime.dedup import DedupCache
from feishubridge.realtime.dispatcher import EventDispatcher
from feishubridge.realtime.router import (
    BOT_ADDED_EVENT,
    BOT_REMOVED_EVENT,
    MESSAGE_READ_EVENT,
    MESSAGE_RECEIVE_EVENT,
    EventRouter,
)
from feishubridge.realtime.supervisor import RealtimeSupervisor
from feishubridge.realtime.transport import EventTransport, WebSocketEventTransport

__all__ = [
    "DedupCache",
    "EventDispatcher",
    "EventRouter",
    "EventTransport",
    "RealtimeSupervisor",
    "WebSocketEventTransport",
    "MESSAGE_RECEIVE_EVENT",
    "MESSAGE_READ_EVENT",
    "BOT_ADDED_EVENT",
    "BOT_REMOVED_EVENT",
]
