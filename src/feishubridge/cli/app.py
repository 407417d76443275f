"""Main Typer application for the Feishu bridge CLI."""

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from feishubridge.agent import load_agent
from feishubridge.bot import FeishuBot
from feishubridge.monitor import fetch_bot_open_id, monitor_feishu, stop_feishu_monitor
from feishubridge.realtime.supervisor import RealtimeSupervisor
from feishubridge.utils.config import ConfigError, FeishuConfig, load_config
from feishubridge.utils.feishu_client import FeishuClient

console = Console()

app = typer.Typer(
    name="feishu-bridge",
    help="Bridge Feishu/Lark chats to an agent with streaming card replies.",
    rich_markup_mode="rich",
    no_args_is_help=True,
)


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv("LOGURU_LEVEL", "INFO")).upper()
    logger.configure(handlers=[{"sink": sys.stderr, "level": level}])


def _mask(value: Optional[str]) -> str:
    if not value:
        return "[dim]unset[/dim]"
    return value[:4] + "…" if len(value) > 4 else "****"


def _load_or_exit(env_file: Optional[Path]) -> FeishuConfig:
    try:
        return load_config(env_file=env_file)
    except ConfigError as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)


def _config_table(config: FeishuConfig) -> Table:
    table = Table(title="Feishu bridge configuration", show_header=True)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_row("enabled", str(config.enabled))
    table.add_row("app_id", _mask(config.app_id))
    table.add_row("app_secret", _mask(config.app_secret))
    table.add_row("tenant_access_token", _mask(config.tenant_access_token))
    table.add_row("domain", f"{config.domain} ({config.base_url})")
    table.add_row("connection_mode", config.connection_mode)
    table.add_row("event_stream_url", config.event_stream_url or "[dim]unset[/dim]")
    table.add_row("render_mode", config.render_mode)
    table.add_row(
        "streaming",
        f"enabled={config.streaming.enabled} "
        f"interval={config.streaming.patch_interval_ms}ms "
        f"cursor={config.streaming.cursor}",
    )
    table.add_row("table_mode", config.markdown.table_mode)
    table.add_row("text_chunk_limit", f"{config.text_chunk_limit} ({config.chunk_mode})")
    table.add_row("require_mention", str(config.require_mention))
    table.add_row("history_limit", f"{config.history_limit} (dm: {config.history_limit_for('p2p')})")
    table.add_row("dm_policy", f"{config.dm_policy} allow_from={','.join(config.allow_from) or '-'}")
    table.add_row(
        "group_policy",
        f"{config.group_policy} allow_from={','.join(config.group_allow_from) or '-'} "
        f"groups={len(config.groups)}",
    )
    return table


@app.command()
def check(
    env_file: Optional[Path] = typer.Option(
        None, "--env-file", "-e", help="Load variables from this .env file first"
    ),
    probe: bool = typer.Option(
        False, "--probe", help="Resolve the bot's open_id against the API"
    ),
) -> None:
    """Validate configuration and print the effective settings."""
    config = _load_or_exit(env_file)
    console.print(_config_table(config))

    if not config.app_id or not config.app_secret:
        console.print("[red]✗[/red] FEISHU_APP_ID and FEISHU_APP_SECRET are required")
        raise typer.Exit(code=1)
    if config.connection_mode == "websocket" and not config.event_stream_url:
        console.print("[red]✗[/red] FEISHU_EVENT_STREAM_URL is required for websocket mode")
        raise typer.Exit(code=1)

    if probe:

        async def _probe() -> Optional[str]:
            async with FeishuClient.from_config(config) as client:
                return await fetch_bot_open_id(client)

        open_id = asyncio.run(_probe())
        if open_id is None:
            console.print("[yellow]![/yellow] Could not resolve bot open_id")
            raise typer.Exit(code=1)
        console.print(f"[green]✓[/green] Bot open_id: [cyan]{open_id}[/cyan]")

    console.print("[green]✓[/green] Configuration looks good")


async def _serve(config: FeishuConfig, agent_spec: str) -> None:
    agent = load_agent(agent_spec)
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, abort.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(abort.set))

    supervisor = RealtimeSupervisor()
    try:
        async with FeishuClient.from_config(config) as client:
            bot = FeishuBot(client, agent)
            await monitor_feishu(
                config, handler=bot, client=client, supervisor=supervisor, abort=abort
            )
    finally:
        stop_feishu_monitor(supervisor)
    logger.info("Feishu bridge stopped")


@app.command()
def run(
    agent: str = typer.Option(
        "feishubridge.agent:EchoAgent",
        "--agent",
        "-a",
        help="Agent to run, as 'package.module:attr'",
    ),
    env_file: Optional[Path] = typer.Option(
        None, "--env-file", "-e", help="Load variables from this .env file first"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", "-l", help="Override LOGURU_LEVEL"
    ),
) -> None:
    """Connect to the event stream and answer messages until interrupted."""
    configure_logging(log_level)
    config = _load_or_exit(env_file)
    if not config.enabled:
        console.print("[yellow]Note:[/yellow] FEISHU_ENABLED is false, nothing to do")
        return

    console.print(f"[bold]Agent:[/bold] [cyan]{agent}[/cyan]")
    try:
        asyncio.run(_serve(config, agent))
    except (ConfigError, ValueError, ImportError) as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)


def version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError, version as get_version

        try:
            v = get_version("feishu-bridge")
        except PackageNotFoundError:
            v = "0.1.0"
        console.print(f"[bold]Feishu bridge[/bold] v{v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        is_eager=True,
        callback=version_callback,
    ),
) -> None:
    """Feishu bridge CLI."""
