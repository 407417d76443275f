"""
Configuration for the Feishu bridge.

All values come from the environment (a local ``.env`` file is loaded first
via python-dotenv) and are validated into a ``FeishuConfig`` model.

Environment Variables:
    FEISHU_APP_ID / FEISHU_APP_SECRET: App credentials (required to start)
    FEISHU_TENANT_ACCESS_TOKEN: Bearer token used by the HTTP client
    FEISHU_DOMAIN: feishu or lark (default: feishu)
    FEISHU_CONNECTION_MODE: websocket or webhook (default: websocket)
    FEISHU_EVENT_STREAM_URL: Websocket URL delivering event envelopes
    FEISHU_RENDER_MODE: auto, raw or card (default: auto)
    FEISHU_STREAMING_ENABLED: Stream thinking/tool progress into the card (default: true)
    FEISHU_STREAMING_PATCH_INTERVAL_MS: Minimum spacing between card patches (default: 500)
    FEISHU_STREAMING_CURSOR: Show a cursor while the reply is streaming (default: true)
    FEISHU_TEXT_CHUNK_LIMIT: Max characters per plain-text message (default: 4000)
    FEISHU_CHUNK_MODE: length or newline (default: length)
    FEISHU_TABLE_MODE: native, ascii or simple (default: ascii)
    FEISHU_REQUIRE_MENTION: Only answer group messages that mention the bot (default: true)
    FEISHU_HISTORY_LIMIT: Messages of per-chat history handed to the agent (default: 20)
    FEISHU_DM_HISTORY_LIMIT: History limit for direct chats (default: FEISHU_HISTORY_LIMIT)
    FEISHU_DM_POLICY: open, pairing or allowlist (default: open)
    FEISHU_ALLOW_FROM: Comma-separated sender open ids allowed to DM the bot (default: *)
    FEISHU_GROUP_POLICY: open, allowlist or disabled (default: open)
    FEISHU_GROUP_ALLOW_FROM: Comma-separated sender open ids allowed in groups
    FEISHU_GROUPS: JSON object of per-chat overrides, e.g.
        {"oc_123": {"require_mention": false, "allow_from": ["ou_1"]}}
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    Field,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)

ConnectionMode = Literal["websocket", "webhook"]
RenderMode = Literal["auto", "raw", "card"]
ChunkMode = Literal["length", "newline"]
TableMode = Literal["native", "ascii", "simple"]
DmPolicy = Literal["open", "pairing", "allowlist"]
GroupPolicy = Literal["open", "allowlist", "disabled"]

WILDCARD = "*"

DOMAIN_BASE_URLS = {
    "feishu": "https://open.feishu.cn",
    "lark": "https://open.larksuite.com",
}


class ConfigError(ValueError):
    """Raised when the bridge cannot start because configuration is missing or invalid."""


class StreamingConfig(BaseModel):
    """Streaming card patch settings."""

    enabled: bool = True
    patch_interval_ms: PositiveInt = 500
    cursor: bool = True


class MarkdownConfig(BaseModel):
    table_mode: TableMode = "ascii"


def _allow_list(value: Any) -> Any:
    """Accept a comma-separated string or a list of ids (numbers allowed)."""
    if value is None:
        return value
    if isinstance(value, str):
        value = value.split(",")
    if isinstance(value, (list, tuple)):
        return [str(entry).strip() for entry in value if str(entry).strip()]
    return value


class GroupConfig(BaseModel):
    """Per-chat overrides; unset fields fall back to the channel settings."""

    require_mention: Optional[bool] = None
    enabled: Optional[bool] = None
    allow_from: Optional[List[str]] = None

    @field_validator("allow_from", mode="before")
    @classmethod
    def normalize_allow_from(cls, value: Any) -> Any:
        return _allow_list(value)


class FeishuConfig(BaseModel):
    """Complete channel configuration consumed by the bridge."""

    enabled: bool = True
    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    tenant_access_token: Optional[str] = None
    domain: Literal["feishu", "lark"] = "feishu"
    connection_mode: ConnectionMode = "websocket"
    event_stream_url: Optional[str] = None
    render_mode: RenderMode = "auto"
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    markdown: MarkdownConfig = Field(default_factory=MarkdownConfig)
    text_chunk_limit: PositiveInt = 4000
    chunk_mode: ChunkMode = "length"
    require_mention: bool = True
    history_limit: int = Field(default=20, ge=0)
    dm_history_limit: Optional[int] = Field(default=None, ge=0)
    dm_policy: DmPolicy = "open"
    allow_from: List[str] = Field(default_factory=lambda: [WILDCARD])
    group_policy: GroupPolicy = "open"
    group_allow_from: List[str] = Field(default_factory=list)
    groups: Dict[str, GroupConfig] = Field(default_factory=dict)

    @field_validator("allow_from", "group_allow_from", mode="before")
    @classmethod
    def normalize_allow_lists(cls, value: Any) -> Any:
        return _allow_list(value)

    @model_validator(mode="after")
    def check_open_dm_policy(self) -> "FeishuConfig":
        if self.dm_policy == "open" and WILDCARD not in self.allow_from:
            raise ValueError('dm_policy="open" requires allow_from to include "*"')
        return self

    @property
    def base_url(self) -> str:
        return DOMAIN_BASE_URLS[self.domain]

    def group_config(self, chat_id: str) -> Optional[GroupConfig]:
        """Overrides for ``chat_id``, falling back to a ``"*"`` entry."""
        group = self.groups.get(chat_id)
        return group if group is not None else self.groups.get(WILDCARD)

    def history_limit_for(self, chat_type: str) -> int:
        if chat_type != "group" and self.dm_history_limit is not None:
            return self.dm_history_limit
        return self.history_limit


@dataclass(frozen=True)
class FeishuCredentials:
    app_id: str
    app_secret: str


def resolve_credentials(config: Optional[FeishuConfig]) -> Optional[FeishuCredentials]:
    """Return the app credentials, or None when either half is missing."""
    if config is None:
        return None
    app_id = (config.app_id or "").strip()
    app_secret = (config.app_secret or "").strip()
    if not app_id or not app_secret:
        return None
    return FeishuCredentials(app_id=app_id, app_secret=app_secret)


def _env_flag(env: Mapping[str, str], name: str) -> Optional[bool]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(env: Mapping[str, str], name: str) -> Optional[str]:
    raw = env.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def load_config(
    env: Optional[Mapping[str, str]] = None,
    *,
    env_file: Optional[Union[str, Path]] = None,
) -> FeishuConfig:
    """Build a ``FeishuConfig`` from environment variables.

    Args:
        env: Mapping to read from. Defaults to ``os.environ`` after loading
            ``env_file`` (or ``.env``) with python-dotenv.
        env_file: Optional dotenv file to load before reading ``os.environ``.

    Raises:
        ConfigError: If a value fails validation.
    """
    if env is None:
        load_dotenv(env_file, override=bool(env_file))
        env = os.environ

    raw: dict = {}
    streaming: dict = {}
    markdown: dict = {}

    for field, name in (
        ("app_id", "FEISHU_APP_ID"),
        ("app_secret", "FEISHU_APP_SECRET"),
        ("tenant_access_token", "FEISHU_TENANT_ACCESS_TOKEN"),
        ("domain", "FEISHU_DOMAIN"),
        ("connection_mode", "FEISHU_CONNECTION_MODE"),
        ("event_stream_url", "FEISHU_EVENT_STREAM_URL"),
        ("render_mode", "FEISHU_RENDER_MODE"),
        ("text_chunk_limit", "FEISHU_TEXT_CHUNK_LIMIT"),
        ("chunk_mode", "FEISHU_CHUNK_MODE"),
        ("history_limit", "FEISHU_HISTORY_LIMIT"),
        ("dm_history_limit", "FEISHU_DM_HISTORY_LIMIT"),
        ("dm_policy", "FEISHU_DM_POLICY"),
        ("allow_from", "FEISHU_ALLOW_FROM"),
        ("group_policy", "FEISHU_GROUP_POLICY"),
        ("group_allow_from", "FEISHU_GROUP_ALLOW_FROM"),
    ):
        value = _env_str(env, name)
        if value is not None:
            raw[field] = value

    for field, name in (
        ("enabled", "FEISHU_ENABLED"),
        ("require_mention", "FEISHU_REQUIRE_MENTION"),
    ):
        flag = _env_flag(env, name)
        if flag is not None:
            raw[field] = flag

    enabled = _env_flag(env, "FEISHU_STREAMING_ENABLED")
    if enabled is not None:
        streaming["enabled"] = enabled
    cursor = _env_flag(env, "FEISHU_STREAMING_CURSOR")
    if cursor is not None:
        streaming["cursor"] = cursor
    interval = _env_str(env, "FEISHU_STREAMING_PATCH_INTERVAL_MS")
    if interval is not None:
        streaming["patch_interval_ms"] = interval

    table_mode = _env_str(env, "FEISHU_TABLE_MODE")
    if table_mode is not None:
        markdown["table_mode"] = table_mode

    groups = _env_str(env, "FEISHU_GROUPS")
    if groups is not None:
        try:
            raw["groups"] = json.loads(groups)
        except ValueError as exc:
            raise ConfigError(f"FEISHU_GROUPS is not valid JSON: {exc}") from exc

    if streaming:
        raw["streaming"] = streaming
    if markdown:
        raw["markdown"] = markdown

    try:
        return FeishuConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid Feishu configuration: {exc}") from exc
