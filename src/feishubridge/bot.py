"""Turns validated inbound message events into agent runs."""

from __future__ import annotations

import json
import re
import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from feishubridge.access import check_access
from feishubridge.agent import AgentRequest, AgentRuntime, HistoryEntry, InboundContext
from feishubridge.reply.dispatcher import ReplyDispatcher
from feishubridge.utils.config import FeishuConfig
from feishubridge.utils.feishu_client import FeishuClient

DispatcherFactory = Callable[[FeishuConfig, str, Optional[str]], ReplyDispatcher]


def _post_text(content: Dict[str, Any]) -> str:
    # Posts are either {"title", "content"} or keyed by locale ({"zh_cn": {...}}).
    if "content" not in content:
        for value in content.values():
            if isinstance(value, dict) and "content" in value:
                content = value
                break

    lines: List[str] = []
    title = content.get("title")
    if isinstance(title, str) and title.strip():
        lines.append(title.strip())
    for paragraph in content.get("content") or []:
        parts: List[str] = []
        for node in paragraph or []:
            if not isinstance(node, dict):
                continue
            tag = node.get("tag")
            if tag in ("text", "a", "md"):
                parts.append(str(node.get("text", "")))
            elif tag == "at":
                parts.append(f"@{node.get('user_name') or node.get('user_id', '')}")
            elif tag == "code_block":
                parts.append(f"```\n{node.get('text', '')}\n```")
        line = "".join(parts).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


def parse_message_text(message_type: Optional[str], raw_content: Optional[str]) -> str:
    """Extract readable text from a message's JSON ``content`` string."""
    try:
        content = json.loads(raw_content or "{}")
    except (TypeError, ValueError):
        return raw_content or ""
    if not isinstance(content, dict):
        return str(content)

    if message_type == "text":
        return str(content.get("text", ""))
    if message_type == "post":
        return _post_text(content)
    return f"[{message_type or 'unknown'}]"


def strip_mentions(
    text: str, mentions: Optional[List[Dict[str, Any]]], bot_open_id: Optional[str]
) -> str:
    """Drop the bot's ``@_user_N`` placeholders and name everyone else."""
    for mention in mentions or []:
        key = mention.get("key")
        if not key:
            continue
        open_id = (mention.get("id") or {}).get("open_id")
        if bot_open_id and open_id == bot_open_id:
            text = text.replace(key, "")
        else:
            text = text.replace(key, f"@{mention.get('name') or open_id or ''}")
    return re.sub(r"[ \t]{2,}", " ", text).strip()


def is_bot_mentioned(
    mentions: Optional[List[Dict[str, Any]]], bot_open_id: Optional[str]
) -> bool:
    if not mentions:
        return False
    if not bot_open_id:
        # Without our own id any mention is taken as addressed to us.
        return True
    return any((m.get("id") or {}).get("open_id") == bot_open_id for m in mentions)


class FeishuBot:
    """Message handler: filters, records history, and runs the agent."""

    def __init__(
        self,
        client: FeishuClient,
        agent: AgentRuntime,
        *,
        dispatcher_factory: Optional[DispatcherFactory] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._agent = agent
        self._dispatcher_factory = dispatcher_factory or self._default_dispatcher
        self._clock = clock

    def _default_dispatcher(
        self, config: FeishuConfig, chat_id: str, reply_to: Optional[str]
    ) -> ReplyDispatcher:
        return ReplyDispatcher(
            self._client, config, chat_id=chat_id, reply_to_message_id=reply_to
        )

    @staticmethod
    def _remember(
        histories: Dict[str, List[HistoryEntry]],
        chat_id: str,
        entry: HistoryEntry,
        limit: int,
    ) -> List[HistoryEntry]:
        """Append ``entry`` and return the history that preceded it."""
        history = histories.setdefault(chat_id, [])
        previous = list(history)
        history.append(entry)
        if len(history) > limit:
            del history[: len(history) - limit]
        if not history:
            histories.pop(chat_id, None)
        return previous

    async def __call__(self, context: InboundContext) -> None:
        await self.handle(context)

    async def handle(self, context: InboundContext) -> None:
        config = context.config
        event = context.event
        message = event.get("message") or {}
        sender = event.get("sender") or {}

        sender_id = (sender.get("sender_id") or {}).get("open_id") or ""
        if sender.get("sender_type") == "app" or (
            context.bot_open_id and sender_id == context.bot_open_id
        ):
            logger.debug("Ignoring message sent by the bot")
            return

        chat_id = message.get("chat_id")
        message_id = message.get("message_id")
        if not chat_id:
            logger.warning(f"Message {message_id} has no chat_id, dropping")
            return
        chat_type = message.get("chat_type") or "p2p"
        access = check_access(
            config, chat_type=chat_type, chat_id=chat_id, sender_id=sender_id
        )
        if not access.allowed:
            logger.info(f"Dropping message {message_id}: {access.reason}")
            return
        mentions = message.get("mentions")

        text = parse_message_text(message.get("message_type"), message.get("content"))
        text = strip_mentions(text, mentions, context.bot_open_id)
        mentioned = is_bot_mentioned(mentions, context.bot_open_id)

        entry = HistoryEntry(
            sender=sender_id, body=text, timestamp=self._clock(), message_id=message_id
        )
        history = self._remember(
            context.chat_histories, chat_id, entry, config.history_limit_for(chat_type)
        )

        if chat_type == "group" and access.require_mention and not mentioned:
            logger.debug(f"Group message in {chat_id} does not mention the bot, recorded only")
            return

        logger.info(f"Handling message {message_id} in {chat_type} chat {chat_id}")
        request = AgentRequest(
            chat_id=chat_id,
            chat_type=chat_type,
            message_id=message_id or "",
            sender_id=sender_id,
            text=text,
            history=history,
            bot_open_id=context.bot_open_id,
            was_mentioned=mentioned,
        )
        dispatcher = self._dispatcher_factory(config, chat_id, message_id)
        try:
            await self._agent.run(request, dispatcher)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Agent run for message {message_id} failed")
            await dispatcher.on_error(exc)
        finally:
            await dispatcher.on_idle()
        logger.debug(f"Reply for {message_id} settled: {dispatcher.snapshot()}")
