"""
Per-reply streaming card.

A ``StreamingCardReply`` turns reasoning snapshots, tool start/end events and
answer text into one card that is created once and then patched in place.

Patch scheduling is a small state machine (see ``PatchState``):

    IDLE --request--> PATCH_SCHEDULED --timer fires--> PATCH_IN_FLIGHT --> IDLE
                                         \\
                                          creation fails --> FAILED

Only one card call per reply runs at a time; a new call first awaits the
in-flight one. Every patch renders the latest state, so fragments arriving
while a patch waits are folded into it.
"""

from __future__ import annotations

import asyncio
import math
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

from loguru import logger

from feishubridge.reply.cards import (
    CompletedTool,
    ReplyRenderState,
    ToolEntry,
    render_reply_card,
)
from feishubridge.reply.delivery import DeliveryOptions, deliver_standalone, send_plain_text
from feishubridge.utils.config import StreamingConfig
from feishubridge.utils.feishu_client import FeishuClient
from feishubridge.utils.text import has_open_markdown_table

T = TypeVar("T")

THINKING_UPDATE_INTERVAL_SECONDS = 0.8


class PatchState(Enum):
    IDLE = "idle"
    PATCH_SCHEDULED = "patch_scheduled"
    PATCH_IN_FLIGHT = "patch_in_flight"
    FAILED = "failed"

    def __str__(self):
        return self.value


class StreamingCardReply:
    """Accumulates one agent reply and keeps its card in sync."""

    def __init__(
        self,
        client: FeishuClient,
        chat_id: str,
        *,
        reply_to_message_id: Optional[str] = None,
        streaming: Optional[StreamingConfig] = None,
        delivery: Optional[DeliveryOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        streaming = streaming or StreamingConfig()
        self.state = ReplyRenderState()
        self._client = client
        self._chat_id = chat_id
        self._reply_to_message_id = reply_to_message_id
        self._streaming_enabled = streaming.enabled
        self._patch_interval = streaming.patch_interval_ms / 1000.0
        self._show_cursor = streaming.cursor
        self._delivery = delivery or DeliveryOptions()
        self._clock = clock

        self._last_patch_time: Optional[float] = None
        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._delivered_text: Optional[str] = None
        self._standalone_delivered = False
        self._plain_text_offset: Optional[int] = None

    @property
    def patch_state(self) -> PatchState:
        if self.state.streaming_failed:
            return PatchState.FAILED
        if self._inflight is not None and not self._inflight.done():
            return PatchState.PATCH_IN_FLIGHT
        if self._timer is not None and not self._timer.done():
            return PatchState.PATCH_SCHEDULED
        return PatchState.IDLE

    @property
    def card_message_id(self) -> Optional[str]:
        return self.state.card_message_id

    # ------------------------------------------------------------------
    # Fragment callbacks
    # ------------------------------------------------------------------
    def on_reasoning(self, text: str) -> None:
        """Replace the thinking snapshot."""
        if self.state.thinking_stopped or not text:
            return
        self.state.thinking_text = text
        self._trigger_thinking_update()

    def on_tool_start(
        self, tool_call_id: str, name: str, args: Optional[Dict[str, Any]] = None
    ) -> None:
        self.state.active_tools[tool_call_id] = ToolEntry(
            name=name, args=args, started_at=self._clock()
        )
        self._trigger_thinking_update()

    def on_tool_end(self, tool_call_id: str, failed: bool = False) -> None:
        entry = self.state.active_tools.pop(tool_call_id, None)
        if entry is not None:
            self.state.completed_tools.append(
                CompletedTool(
                    name=entry.name,
                    args=entry.args,
                    started_at=entry.started_at,
                    failed=failed,
                )
            )
        self._trigger_thinking_update()

    async def on_text(self, text: str, final: bool = False) -> None:
        """Append answer text; ``final`` delivers everything accumulated so far."""
        if not text or not text.strip():
            return
        self._stop_thinking()
        self.state.append_text(text)
        if final:
            await self.finalize()
        elif self._streaming_enabled:
            self._request_patch(immediate=False)

    async def on_idle(self) -> None:
        """The agent finished: flush undelivered text or collapse the thinking panel."""
        self._cancel_timer()
        was_stopped = self.state.thinking_stopped
        self.state.thinking_stopped = True

        text = self.state.accumulated_text
        if text.strip() and text != self._delivered_text:
            await self.finalize()
        elif not was_stopped and self.state.card_message_id and self.state.has_thinking_content:
            await self._patch_card(final=False)
        await self._wait_for_inflight()

    def cancel_pending(self) -> None:
        self._cancel_timer()

    async def wait_settled(self) -> None:
        """Wait until no timer, background patch or card call is pending."""
        while True:
            pending = {task for task in self._tasks if not task.done()}
            for task in (self._timer, self._inflight):
                if task is not None and not task.done():
                    pending.add(task)
            if not pending:
                return
            await asyncio.wait(pending)

    # ------------------------------------------------------------------
    # Finalize and fallback
    # ------------------------------------------------------------------
    async def finalize(self) -> None:
        """Deliver the full accumulated text once; repeated calls are no-ops."""
        if not self.state.accumulated_text.strip():
            return
        if self.state.accumulated_text == self._delivered_text:
            return

        self._cancel_timer()
        self.state.thinking_stopped = True
        await self._wait_for_inflight()

        text = self.state.accumulated_text
        if text == self._delivered_text:
            return
        self._delivered_text = text

        if self.state.card_message_id is not None:
            try:
                await self._exclusive(self._write_final_card)
                return
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Final card update failed, using standalone delivery: {exc}")

        await self._deliver_fallback(text)

    async def _write_final_card(self) -> None:
        card = render_reply_card(
            self.state, final=True, show_cursor=self._show_cursor, now=self._clock()
        )
        await self._client.update_card(self.state.card_message_id, card)
        self._last_patch_time = self._clock()

    async def _deliver_fallback(self, text: str) -> None:
        if self._plain_text_offset is not None:
            tail = text[self._plain_text_offset:].lstrip("\n")
            self._plain_text_offset = len(text)
            if tail.strip():
                await send_plain_text(
                    self._client,
                    self._chat_id,
                    tail,
                    options=self._delivery,
                    reply_to_message_id=self._reply_to_message_id,
                )
            return

        if self._standalone_delivered:
            logger.debug("Standalone delivery already used for this reply")
            return
        self._standalone_delivered = True

        card = render_reply_card(
            self.state, final=True, show_cursor=self._show_cursor, now=self._clock()
        )
        message_id = await self._exclusive(
            lambda: deliver_standalone(
                self._client,
                self._chat_id,
                text,
                card=card,
                options=self._delivery,
                reply_to_message_id=self._reply_to_message_id,
            )
        )
        if message_id is not None:
            # Later finals update the standalone card instead of sending more messages.
            self.state.card_message_id = message_id
        else:
            self._plain_text_offset = len(text)

    # ------------------------------------------------------------------
    # Patch scheduling
    # ------------------------------------------------------------------
    def _stop_thinking(self) -> None:
        if not self.state.thinking_stopped:
            self.state.thinking_stopped = True
            self._cancel_timer()

    def _seconds_since_patch(self) -> float:
        if self._last_patch_time is None:
            return math.inf
        return self._clock() - self._last_patch_time

    def _trigger_thinking_update(self) -> None:
        if self.state.thinking_stopped:
            return
        self.state.has_thinking_content = True
        if self.state.thinking_started_at is None:
            self.state.thinking_started_at = self._clock()
        if not self._streaming_enabled:
            return
        self._request_patch(
            immediate=self._seconds_since_patch() >= THINKING_UPDATE_INTERVAL_SECONDS
        )

    def _request_patch(self, *, immediate: bool) -> None:
        if self._timer is not None and not self._timer.done():
            return
        if immediate:
            delay = 0.0
        else:
            delay = max(0.0, self._patch_interval - self._seconds_since_patch())
        self._timer = self._spawn(self._run_timer(delay))

    async def _run_timer(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._wait_for_inflight()
        if self._timer is asyncio.current_task():
            self._timer = None
        if not self.state.streaming_failed:
            await self._patch_card(final=False)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _patch_card(self, final: bool = False) -> None:
        if self.state.streaming_failed:
            return
        if not final and has_open_markdown_table(self.state.accumulated_text):
            logger.debug("Skipping intermediate patch while a table is still streaming")
            return
        await self._exclusive(lambda: self._write_card(final))

    async def _write_card(self, final: bool) -> None:
        if self.state.streaming_failed:
            return
        card = render_reply_card(
            self.state, final=final, show_cursor=self._show_cursor, now=self._clock()
        )
        try:
            if self.state.card_message_id is None:
                message_id = await self._client.send_card(
                    self._chat_id, card, reply_to_message_id=self._reply_to_message_id
                )
                self.state.card_message_id = message_id
                logger.debug(f"Streaming card created: {message_id}")
            else:
                await self._client.update_card(self.state.card_message_id, card)
            self._last_patch_time = self._clock()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Card patch failed: {exc}")
            # A failed update is transient; only a failed creation disables streaming.
            if self.state.card_message_id is None:
                self.state.streaming_failed = True

    # ------------------------------------------------------------------
    # Single-writer helpers
    # ------------------------------------------------------------------
    async def _wait_for_inflight(self) -> None:
        while self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight})

    async def _exclusive(self, factory: Callable[[], Awaitable[T]]) -> T:
        await self._wait_for_inflight()
        task = asyncio.ensure_future(factory())
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
