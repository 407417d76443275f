"""Reaction-based typing indicator on the inbound message."""

from __future__ import annotations

from typing import Optional

from loguru import logger

from feishubridge.utils.feishu_client import FeishuClient

TYPING_EMOJI = "Typing"


class TypingIndicator:
    """Adds a reaction while a reply is being produced and removes it afterwards.

    Failures are logged and never raised; the indicator is cosmetic.
    """

    def __init__(
        self,
        client: FeishuClient,
        message_id: Optional[str],
        *,
        emoji_type: str = TYPING_EMOJI,
    ) -> None:
        self._client = client
        self._message_id = message_id
        self._emoji_type = emoji_type
        self._reaction_id: Optional[str] = None
        self._started = False

    @property
    def active(self) -> bool:
        return self._reaction_id is not None

    async def start(self) -> None:
        if self._started or not self._message_id:
            return
        self._started = True
        try:
            self._reaction_id = await self._client.add_reaction(
                self._message_id, self._emoji_type
            )
            logger.debug(f"Typing indicator added: {self._reaction_id}")
        except Exception as exc:  # noqa: BLE001
            logger.info(f"Failed to add typing indicator: {exc}")

    async def stop(self) -> None:
        reaction_id, self._reaction_id = self._reaction_id, None
        if not reaction_id or not self._message_id:
            return
        try:
            await self._client.delete_reaction(self._message_id, reaction_id)
        except Exception as exc:  # noqa: BLE001
            logger.info(f"Failed to remove typing indicator: {exc}")
