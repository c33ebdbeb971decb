"""Gateway process entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING

from telegram_hook_bridge.application.permission import PermissionService
from telegram_hook_bridge.application.router import CallbackRouter
from telegram_hook_bridge.application.selection import SelectionService
from telegram_hook_bridge.application.sweeper import Sweeper
from telegram_hook_bridge.infrastructure.chat_registry import ChatRegistry
from telegram_hook_bridge.infrastructure.config import get_config
from telegram_hook_bridge.infrastructure.logging import configure_logging, get_logger
from telegram_hook_bridge.infrastructure.store import RecordStore
from telegram_hook_bridge.infrastructure.telegram_client import TelegramClient
from telegram_hook_bridge.infrastructure.tmux import TmuxInjector
from telegram_hook_bridge.presentation.gateway import Gateway

if TYPE_CHECKING:
    from telegram_hook_bridge.infrastructure.config import Config


def build_gateway(config: Config, client: TelegramClient) -> Gateway:
    """
    設定から Gateway とその依存関係を組み立てる.

    Args:
        config: 設定
        client: Telegram クライアント

    Returns:
        Gateway
    """
    store = RecordStore(config.state_dir)
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
    injector = TmuxInjector(config.tmux_session) if config.tmux_session else None
    return Gateway(
        config,
        client,
        router,
        ChatRegistry(config.state_dir),
        sweeper,
        injector=injector,
    )


async def main(config: Config | None = None) -> None:
    """
    Gateway のメインエントリポイント.

    Args:
        config: 読み込み済みの設定。呼び出し側でロギングも設定済みであること.
            None の場合はここで設定を読み込み、ロギングを設定する
    """
    if config is None:
        config = get_config()
        configure_logging(
            log_level=config.log_level,
            log_dir=config.log_dir,
            log_backup_count=config.log_backup_count,
        )

    logger = get_logger(__name__)

    logger.info("Starting Telegram hook bridge gateway...")

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        if shutdown_event.is_set():
            return
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    client: TelegramClient | None = None
    gateway_task: asyncio.Task[None] | None = None
    shutdown_task: asyncio.Task[bool] | None = None

    try:
        client = TelegramClient.from_config(config)
        gateway = build_gateway(config, client)
        logger.info("Services initialized", state_dir=str(config.state_dir))

        gateway_task = asyncio.create_task(gateway.run())
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, _ = await asyncio.wait(
            [gateway_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # gateway_task が例外で終了した場合は例外を伝播
        if gateway_task in done:
            gateway_task.result()

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        for task in (gateway_task, shutdown_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if client is not None:
            try:
                await asyncio.wait_for(client.close(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Client close timed out")
            except Exception:
                logger.exception("Error during client cleanup")

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

        logger.info("Shutdown complete")

        logging.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
