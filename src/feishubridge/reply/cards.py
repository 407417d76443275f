"""Card JSON 2.0 construction for streamed replies."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from feishubridge.utils.text import repair_markdown_tables

STREAMING_CURSOR = " ▍"
THINKING_TITLE = "🧠 Thinking…"
THINKING_PLACEHOLDER = "🧠 **Thinking…**"
THINKING_MAX_CHARS = 3000
TOOL_ARG_MAX_CHARS = 150
RECENT_TOOL_LIMIT = 10

# Preferred argument to preview per tool name; otherwise the first string arg.
TOOL_ARG_EXTRACTORS: Dict[str, List[str]] = {
    "read": ["path"],
    "write": ["path"],
    "edit": ["file_path"],
    "exec": ["command"],
    "bash": ["command"],
    "search": ["pattern", "query"],
    "grep": ["pattern"],
    "glob": ["pattern"],
    "web_search": ["query"],
    "web_fetch": ["url"],
    "list_directory": ["path"],
}


@dataclass
class ToolEntry:
    name: str
    args: Optional[Dict[str, Any]] = None
    started_at: float = 0.0


@dataclass
class CompletedTool:
    name: str
    args: Optional[Dict[str, Any]] = None
    started_at: float = 0.0
    failed: bool = False


@dataclass
class ReplyRenderState:
    """Everything a single reply's card is rendered from."""

    accumulated_text: str = ""
    thinking_text: Optional[str] = None
    has_thinking_content: bool = False
    thinking_started_at: Optional[float] = None
    active_tools: Dict[str, ToolEntry] = field(default_factory=dict)
    completed_tools: List[CompletedTool] = field(default_factory=list)
    card_message_id: Optional[str] = None
    thinking_stopped: bool = False
    streaming_failed: bool = False

    def append_text(self, text: str) -> None:
        if (
            self.accumulated_text
            and not self.accumulated_text.endswith("\n")
            and not text.startswith("\n")
        ):
            self.accumulated_text += "\n"
        self.accumulated_text += text


def _truncate(value: str, max_len: int) -> str:
    trimmed = value.strip()
    return trimmed[:max_len] + "…" if len(trimmed) > max_len else trimmed


def extract_tool_args(
    name: str,
    args: Optional[Mapping[str, Any]],
    max_len: int = TOOL_ARG_MAX_CHARS,
) -> str:
    """Pick one short, human-readable argument to show next to a tool name."""
    if not args:
        return ""
    for key in TOOL_ARG_EXTRACTORS.get(name.lower(), []):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return _truncate(value, max_len)
    for value in args.values():
        if isinstance(value, str) and value.strip():
            return _truncate(value, max_len)
    return ""


def _tool_line(icon: str, name: str, args: Optional[Mapping[str, Any]]) -> str:
    preview = extract_tool_args(name, args)
    return f"{icon} `{name}` {preview}" if preview else f"{icon} `{name}`"


def build_thinking_section(
    thinking_text: Optional[str],
    active_tools: Mapping[str, ToolEntry],
    completed_tools: List[CompletedTool],
    max_len: int = THINKING_MAX_CHARS,
) -> str:
    parts: List[str] = []

    if thinking_text:
        trimmed = "…" + thinking_text[-max_len:] if len(thinking_text) > max_len else thinking_text
        parts.append("🧠 **Thinking**")
        parts.append("> " + trimmed.replace("\n", "\n> "))

    if completed_tools or active_tools:
        if parts:
            parts.append("")
        for tool in completed_tools[-RECENT_TOOL_LIMIT:]:
            parts.append(_tool_line("❌" if tool.failed else "✅", tool.name, tool.args))
        for tool in active_tools.values():
            parts.append(_tool_line("⏳", tool.name, tool.args))

    return "\n".join(parts)


def build_collapse_summary(
    completed_tools: Iterable[CompletedTool],
    started_at: Optional[float],
    now: float,
) -> str:
    """One-line panel header shown once thinking has stopped."""
    tools = list(completed_tools)
    failed = sum(1 for tool in tools if tool.failed)
    ok = len(tools) - failed

    parts = ["🧠 Thinking complete"]
    if started_at is not None:
        parts.append(f"{max(0.0, now - started_at):.1f}s")
    if tools:
        if failed:
            parts.append(f"{ok}✅ {failed}❌")
        else:
            parts.append(f"{len(tools)} tool{'s' if len(tools) != 1 else ''}")
    return " · ".join(parts)


def build_unified_card(
    *,
    thinking_markdown: Optional[str] = None,
    thinking_expanded: bool = False,
    thinking_title: str = "",
    reply_markdown: Optional[str] = None,
) -> Dict[str, Any]:
    """Card with an optional collapsible thinking panel above the reply."""
    elements: List[Dict[str, Any]] = []

    if thinking_markdown:
        elements.append(
            {
                "tag": "collapsible_panel",
                "expanded": thinking_expanded,
                "header": {"title": {"tag": "plain_text", "content": thinking_title}},
                "elements": [{"tag": "markdown", "content": thinking_markdown}],
            }
        )

    if reply_markdown:
        elements.append({"tag": "markdown", "content": reply_markdown})

    # collapsible_panel only exists in the 2.0 card schema
    return {
        "schema": "2.0",
        "config": {"wide_screen_mode": True},
        "body": {"elements": elements},
    }


def render_reply_card(
    state: ReplyRenderState,
    *,
    final: bool,
    show_cursor: bool,
    now: float,
) -> Dict[str, Any]:
    """Render the complete card for the current state (a full replace, not a delta)."""
    cursor = "" if final or not show_cursor else STREAMING_CURSOR
    reply_md = repair_markdown_tables(state.accumulated_text) + cursor if state.accumulated_text else None

    thinking_md = build_thinking_section(
        state.thinking_text, state.active_tools, state.completed_tools
    )
    has_thinking = state.has_thinking_content or bool(thinking_md)

    if state.thinking_stopped:
        title = build_collapse_summary(state.completed_tools, state.thinking_started_at, now)
    else:
        title = THINKING_TITLE

    return build_unified_card(
        thinking_markdown=(thinking_md or THINKING_TITLE) if has_thinking else None,
        thinking_expanded=not state.thinking_stopped,
        thinking_title=title,
        reply_markdown=reply_md or (None if has_thinking else THINKING_PLACEHOLDER),
    )
