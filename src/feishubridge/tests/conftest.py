"""Shared fakes for the Feishu bridge unit tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest


class FakeFeishuClient:
    """Records every API call and optionally fails or delays them.

    ``failures`` maps a method name to a list of exceptions raised by
    successive calls (``None`` entries succeed).
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Optional[Exception]]] = {}
        self._counter = 0
        self.active = 0
        self.max_active = 0

    def fail(self, method: str, *errors: Optional[Exception]) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    async def _call(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        queue = self.failures.get(method)
        if queue:
            error = queue.pop(0)
            if error is not None:
                raise error

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    async def send_card(self, chat_id, card, *, reply_to_message_id=None) -> str:
        await self._call("send_card", chat_id, card, reply_to_message_id)
        return self._next_id("om_card")

    async def update_card(self, message_id, card) -> None:
        await self._call("update_card", message_id, card)

    async def send_text(self, chat_id, text, *, reply_to_message_id=None) -> str:
        await self._call("send_text", chat_id, text, reply_to_message_id)
        return self._next_id("om_text")

    async def add_reaction(self, message_id, emoji_type) -> Optional[str]:
        await self._call("add_reaction", message_id, emoji_type)
        return self._next_id("reaction")

    async def delete_reaction(self, message_id, reaction_id) -> None:
        await self._call("delete_reaction", message_id, reaction_id)

    async def get_bot_open_id(self) -> Optional[str]:
        await self._call("get_bot_open_id")
        return "ou_bot"


@pytest.fixture
def fake_client() -> FakeFeishuClient:
    return FakeFeishuClient()


@pytest.fixture
def make_message_event():
    def _make(
        message_id: Optional[str] = "om_1",
        *,
        text: str = "hello",
        chat_id: str = "oc_chat",
        chat_type: str = "p2p",
        sender: str = "ou_user",
        sender_type: str = "user",
        mentions: Optional[List[Dict[str, Any]]] = None,
        message_type: str = "text",
        content: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "chat_id": chat_id,
            "chat_type": chat_type,
            "message_type": message_type,
            "content": json.dumps(content if content is not None else {"text": text}),
        }
        if message_id is not None:
            message["message_id"] = message_id
        if mentions is not None:
            message["mentions"] = mentions
        return {
            "sender": {"sender_id": {"open_id": sender}, "sender_type": sender_type},
            "message": message,
        }

    return _make
