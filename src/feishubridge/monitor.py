"""Entry point that validates configuration and runs the realtime connection."""

from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from feishubridge.agent import MessageHandler
from feishubridge.realtime.supervisor import RealtimeSupervisor
from feishubridge.utils.config import ConfigError, FeishuConfig, resolve_credentials
from feishubridge.utils.feishu_client import FeishuClient


async def fetch_bot_open_id(client: FeishuClient) -> Optional[str]:
    """The bot's own open id, or None if the lookup fails for any reason."""
    try:
        return await client.get_bot_open_id()
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Could not resolve bot open_id: {exc}")
        return None


async def monitor_feishu(
    config: FeishuConfig,
    *,
    handler: MessageHandler,
    client: FeishuClient,
    supervisor: Optional[RealtimeSupervisor] = None,
    abort: Optional[asyncio.Event] = None,
) -> None:
    """Listen for inbound messages until ``abort`` is set.

    Raises ``ConfigError`` before touching the network when credentials or
    the event stream URL are missing.
    """
    if resolve_credentials(config) is None:
        raise ConfigError("Feishu credentials not configured (app_id, app_secret required)")

    if config.connection_mode == "websocket" and not config.event_stream_url:
        raise ConfigError("FEISHU_EVENT_STREAM_URL is required for websocket mode")

    bot_open_id = await fetch_bot_open_id(client)
    logger.info(f"Bot open_id resolved: {bot_open_id or 'unknown'}")

    if config.connection_mode != "websocket":
        logger.warning("Webhook mode is not served by the monitor; run an HTTP endpoint instead")
        return

    supervisor = supervisor or RealtimeSupervisor()
    await supervisor.start_connection(
        config, handler, bot_open_id=bot_open_id, abort=abort
    )


def stop_feishu_monitor(supervisor: RealtimeSupervisor) -> None:
    """Retire the live connection and any callbacks still queued for it."""
    supervisor.stop_connection()
