"""Command-line interface."""

from __future__ import annotations

import asyncio
import sys

import click
from pydantic import ValidationError

from telegram_hook_bridge import __version__
from telegram_hook_bridge.application.hooks import execute_hook
from telegram_hook_bridge.application.models import RecordKind
from telegram_hook_bridge.application.permission import PermissionService
from telegram_hook_bridge.application.router import CallbackRouter
from telegram_hook_bridge.application.selection import SelectionService
from telegram_hook_bridge.application.sweeper import Sweeper, SweepReport
from telegram_hook_bridge.infrastructure.config import Config, get_config
from telegram_hook_bridge.infrastructure.logging import (
    bind_process_context,
    configure_logging,
)
from telegram_hook_bridge.infrastructure.store import RecordStore, now_ms
from telegram_hook_bridge.infrastructure.telegram_client import TelegramClient


def _load_config(process: str) -> Config:
    """設定を読み込み、ロギングを設定する（失敗時は終了コード1）."""
    try:
        config = get_config()
    except ValidationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )
    bind_process_context(process=process)
    return config


def _run_hook(kind: RecordKind) -> None:
    config = _load_config(f"{kind.value}-hook")
    raw_input = click.get_text_stream("stdin").read()
    result = asyncio.run(execute_hook(kind, raw_input, config))
    click.echo(result.to_json())
    sys.exit(result.exit_code)


@click.group()
@click.version_option(version=__version__, prog_name="telegram-hook-bridge")
def cli() -> None:
    """Approve Claude Code tool calls and answer its questions from Telegram."""


@cli.command()
def gateway() -> None:
    """Run the gateway that receives Telegram updates."""
    from telegram_hook_bridge.main import main

    config = _load_config("gateway")
    asyncio.run(main(config))


@cli.command("permission-hook")
def permission_hook() -> None:
    """Ask for tool permission over Telegram (hook JSON on stdin)."""
    _run_hook(RecordKind.PERMISSION)


@cli.command("selection-hook")
def selection_hook() -> None:
    """Ask a multiple-choice question over Telegram (hook JSON on stdin)."""
    _run_hook(RecordKind.SELECTION)


async def _sweep(config: Config) -> SweepReport:
    store = RecordStore(config.state_dir)
    async with TelegramClient.from_config(config) as client:
        router = CallbackRouter(
            PermissionService(store),
            SelectionService(store),
            client,
            allowed_users=config.telegram_allowed_users,
        )
        sweeper = Sweeper(
            store,
            stale_request_ms=config.stale_request_ms,
            resolved_retention_ms=config.resolved_retention_ms,
            on_expired=router.refresh_message,
        )
        return await sweeper.sweep()


@cli.command()
def sweep() -> None:
    """Expire orphaned requests and delete old resolved ones."""
    config = _load_config("sweep")
    report = asyncio.run(_sweep(config))
    click.echo(f"Expired: {report.expired}, deleted: {report.deleted}")


@cli.command()
def status() -> None:
    """List outstanding permission requests and questions."""
    config = _load_config("status")
    store = RecordStore(config.state_dir)
    current = now_ms()

    found = False
    for kind in RecordKind:
        for record in store.list_all(kind):
            found = True
            age = (current - record.timestamp) // 1000
            if kind is RecordKind.PERMISSION:
                summary = record.tool_name  # type: ignore[union-attr]
            else:
                summary = record.question  # type: ignore[union-attr]
            click.echo(
                f"{kind.value:<10} {record.request_id:<28} "
                f"{record.status.value:<15} {age:>5}s  {summary}"
            )

    if not found:
        click.echo("No outstanding requests.")


if __name__ == "__main__":
    cli()
