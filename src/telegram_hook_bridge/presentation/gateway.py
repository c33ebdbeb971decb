"""Gateway process: Telegram update loop and dispatch."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.telegram_client import TelegramAPIError
from telegram_hook_bridge.presentation.views.status import HELP_TEXT, render_status

if TYPE_CHECKING:
    from telegram_hook_bridge.application.router import CallbackRouter
    from telegram_hook_bridge.application.sweeper import Sweeper
    from telegram_hook_bridge.infrastructure.chat_registry import ChatRegistry
    from telegram_hook_bridge.infrastructure.config import Config
    from telegram_hook_bridge.infrastructure.telegram_client import TelegramClient
    from telegram_hook_bridge.infrastructure.telegram_models import (
        CallbackQuery,
        Message,
        Update,
    )
    from telegram_hook_bridge.infrastructure.tmux import TmuxInjector

logger = get_logger(__name__)

UNKNOWN_ACTION_NOTICE = "Unknown action"

# getUpdates が失敗した場合の待機秒数
ERROR_BACKOFF_SECONDS = 5.0


def parse_command(text: str) -> str | None:
    """
    "/status@my_bot args" のようなコマンドからコマンド名を取り出す.

    Args:
        text: メッセージ本文

    Returns:
        小文字のコマンド名。コマンドでなければNone
    """
    if not text.startswith("/"):
        return None
    head = text[1:].split(maxsplit=1)[0] if len(text) > 1 else ""
    name = head.split("@", 1)[0].lower()
    return name or None


class Gateway:
    """Telegram からの更新を受け取り、ボタン・回答・通常メッセージを振り分ける."""

    def __init__(
        self,
        config: Config,
        client: TelegramClient,
        router: CallbackRouter,
        registry: ChatRegistry,
        sweeper: Sweeper,
        injector: TmuxInjector | None = None,
        error_backoff: float = ERROR_BACKOFF_SECONDS,
    ) -> None:
        """
        Initialize Gateway.

        Args:
            config: 設定
            client: Telegram クライアント
            router: コールバックルーター
            registry: チャットレジストリ
            sweeper: 放置レコードの回収
            injector: tmux への入力（未設定の場合は通常メッセージを無視する）
            error_backoff: getUpdates 失敗時の待機秒数
        """
        self._config = config
        self._client = client
        self._router = router
        self._registry = registry
        self._sweeper = sweeper
        self._injector = injector
        self._error_backoff = error_backoff
        self._offset: int | None = None
        self._last_sweep: float | None = None

    @property
    def offset(self) -> int | None:
        """次に要求する update_id."""
        return self._offset

    async def run(self) -> None:
        """キャンセルされるまで更新の取得と処理を繰り返す."""
        logger.info("Gateway started", tmux_session=self._config.tmux_session)
        while True:
            await self.maybe_sweep()
            await self.poll_once()

    async def poll_once(self) -> int:
        """
        getUpdates を1回呼び出し、受け取った更新を処理する.

        Returns:
            処理した更新の数
        """
        try:
            updates = await self._client.get_updates(
                self._offset, timeout=self._config.long_poll_timeout_seconds
            )
        except TelegramAPIError as e:
            logger.warning("Failed to fetch updates", error=str(e))
            await asyncio.sleep(self._error_backoff)
            return 0

        for update in updates:
            self._offset = update.update_id + 1
            try:
                await self.handle_update(update)
            except Exception:
                logger.exception("Error handling update", update_id=update.update_id)
        return len(updates)

    async def maybe_sweep(self) -> None:
        """前回から sweep_interval_seconds 以上経過していればスイープする."""
        now = time.monotonic()
        if (
            self._last_sweep is not None
            and now - self._last_sweep < self._config.sweep_interval_seconds
        ):
            return
        self._last_sweep = now
        try:
            await self._sweeper.sweep()
        except Exception:
            logger.exception("Sweep failed")

    async def handle_update(self, update: Update) -> None:
        """
        更新を1件処理する.

        Args:
            update: 受信した更新
        """
        if update.callback_query is not None:
            await self._handle_callback(update.callback_query)
        elif update.message is not None:
            await self._handle_message(update.message)

    async def _handle_callback(self, callback: CallbackQuery) -> None:
        if await self._router.route(callback):
            return
        try:
            await self._client.answer_callback_query(callback.id, UNKNOWN_ACTION_NOTICE)
        except TelegramAPIError as e:
            logger.warning("Failed to answer callback", error=str(e))

    async def _handle_message(self, message: Message) -> None:
        user = message.from_user
        if user is None or user.is_bot:
            return
        if not self._config.is_allowed_user(user.id):
            logger.warning("Message from unauthorized user", user_id=user.id)
            return

        chat_id = message.chat.id
        self._registry.register_chat(chat_id)

        text = (message.text or "").strip()
        if not text:
            return

        if await self._router.route_message(message):
            logger.info("Message consumed as typed answer", chat_id=chat_id)
            return

        command = parse_command(text)
        if command == "status":
            await self._reply(chat_id, await self.status_text())
        elif command in {"help", "start"}:
            await self._reply(chat_id, HELP_TEXT)
        else:
            await self._inject(chat_id, text)

    async def status_text(self) -> str:
        """/status の本文を組み立てる."""
        permissions = [
            r for r in self._router.permissions.list_all() if not r.status.is_terminal
        ]
        selections = [
            r for r in self._router.selections.list_all() if not r.status.is_terminal
        ]
        tmux_running = (
            await self._injector.session_exists() if self._injector is not None else None
        )
        return render_status(permissions, selections, tmux_running)

    async def _inject(self, chat_id: int, text: str) -> None:
        if self._injector is None:
            logger.debug("No tmux session configured, ignoring message", chat_id=chat_id)
            return

        result = await self._injector.inject(text)
        if result.success:
            self._registry.clear_injection_failure(chat_id)
            return

        logger.warning("Failed to inject message", chat_id=chat_id, error=result.error)
        if self._registry.mark_injection_failure(chat_id):
            await self._reply(
                chat_id,
                f"❌ Failed to send message to Claude: {result.error}",
                markdown=False,
            )

    async def _reply(self, chat_id: int, text: str, *, markdown: bool = True) -> None:
        try:
            await self._client.send_message(
                chat_id, text, parse_mode="MarkdownV2" if markdown else None
            )
        except TelegramAPIError as e:
            logger.warning("Failed to send reply", chat_id=chat_id, error=str(e))
