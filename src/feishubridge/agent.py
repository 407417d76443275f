"""Types shared with the agent runtime that produces replies."""

from __future__ import annotations

import asyncio
import importlib
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from feishubridge.utils.config import FeishuConfig


@dataclass
class HistoryEntry:
    """A message kept in the per-chat working set."""

    sender: str
    body: str
    timestamp: float
    message_id: Optional[str] = None


@dataclass
class InboundContext:
    """Everything the router forwards for one validated inbound message."""

    config: FeishuConfig
    event: Dict[str, Any]
    bot_open_id: Optional[str]
    chat_histories: Dict[str, List[HistoryEntry]]


MessageHandler = Callable[[InboundContext], Awaitable[None]]


@dataclass
class AgentRequest:
    chat_id: str
    chat_type: str
    message_id: str
    sender_id: str
    text: str
    history: List[HistoryEntry] = field(default_factory=list)
    bot_open_id: Optional[str] = None
    was_mentioned: bool = False


class ReplySink(Protocol):
    """Callbacks an agent drives while producing a reply."""

    async def on_reply_start(self) -> None:
        ...

    def on_reasoning_stream(self, payload: Dict[str, Any]) -> None:
        ...

    def on_agent_event(self, event: Dict[str, Any]) -> None:
        ...

    async def deliver(self, text: str, kind: str = "final") -> None:
        ...


class AgentRuntime(Protocol):
    async def run(self, request: AgentRequest, sink: ReplySink) -> None:
        ...


class EchoAgent:
    """Minimal agent that thinks briefly and repeats the inbound text.

    Useful for checking a deployment end to end without a model behind it.
    """

    def __init__(self, delay: float = 0.2) -> None:
        self._delay = delay

    async def run(self, request: AgentRequest, sink: ReplySink) -> None:
        await sink.on_reply_start()
        sink.on_reasoning_stream({"text": f"Reading message from {request.sender_id}…"})
        await asyncio.sleep(self._delay)
        await sink.deliver(request.text or "(empty message)", "final")


def load_agent(spec: str) -> AgentRuntime:
    """Resolve a ``module:attr`` spec to an agent instance.

    Classes and zero-argument factories are called; anything else is used
    as-is.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Agent spec must look like 'package.module:attr', got {spec!r}")
    module = importlib.import_module(module_name)
    try:
        target = getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from exc
    if callable(target) and not hasattr(target, "run"):
        target = target()
    elif isinstance(target, type):
        target = target()
    if not hasattr(target, "run"):
        raise ValueError(f"{spec} does not provide a run(request, sink) coroutine")
    return target
