"""Tests for the gateway update loop."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from telegram_hook_bridge.application.models import PermissionStatus, SelectionStatus
from telegram_hook_bridge.application.permission import PermissionService
from telegram_hook_bridge.application.router import CallbackRouter
from telegram_hook_bridge.application.selection import SelectionService
from telegram_hook_bridge.application.sweeper import Sweeper
from telegram_hook_bridge.infrastructure.chat_registry import ChatRegistry
from telegram_hook_bridge.infrastructure.config import Config
from telegram_hook_bridge.infrastructure.store import RecordStore
from telegram_hook_bridge.infrastructure.telegram_client import TelegramAPIError
from telegram_hook_bridge.infrastructure.telegram_models import Update
from telegram_hook_bridge.infrastructure.tmux import InjectionResult
from telegram_hook_bridge.presentation.gateway import (
    UNKNOWN_ACTION_NOTICE,
    Gateway,
    parse_command,
)
from telegram_hook_bridge.presentation.views.status import HELP_TEXT

if TYPE_CHECKING:
    from pathlib import Path

CHAT_ID = 900
USER_ID = 55


def _message_update(
    text: str, update_id: int = 1, user_id: int = USER_ID, is_bot: bool = False
) -> Update:
    return Update.model_validate(
        {
            "update_id": update_id,
            "message": {
                "message_id": 10,
                "chat": {"id": CHAT_ID},
                "from": {"id": user_id, "is_bot": is_bot, "first_name": "Sam"},
                "text": text,
            },
        }
    )


def _callback_update(data: str, update_id: int = 1) -> Update:
    return Update.model_validate(
        {
            "update_id": update_id,
            "callback_query": {
                "id": "cb-9",
                "from": {"id": USER_ID, "first_name": "Sam"},
                "message": {"message_id": 11, "chat": {"id": CHAT_ID}},
                "data": data,
            },
        }
    )


@pytest.fixture
def client() -> MagicMock:
    """Telegram クライアントのモックを返す."""
    mock = MagicMock()
    mock.get_updates = AsyncMock(return_value=[])
    mock.send_message = AsyncMock()
    mock.edit_message_text = AsyncMock()
    mock.answer_callback_query = AsyncMock()
    return mock


@pytest.fixture
def injector() -> MagicMock:
    """tmux インジェクターのモックを返す."""
    mock = MagicMock()
    mock.inject = AsyncMock(return_value=InjectionResult(success=True))
    mock.session_exists = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """テスト用の設定を返す."""
    return Config(
        telegram_bot_token="t",
        telegram_allowed_users=[USER_ID],
        state_dir=tmp_path,
        tmux_session="claude",
        long_poll_timeout_seconds=0,
    )


def _gateway(
    config: Config,
    client: MagicMock,
    injector: Any = None,
    sweeper: Any = None,
) -> Gateway:
    store = RecordStore(config.state_dir)
    router = CallbackRouter(
        PermissionService(store),
        SelectionService(store),
        client,
        allowed_users=config.telegram_allowed_users,
    )
    if sweeper is None:
        sweeper = Sweeper(
            store,
            stale_request_ms=config.stale_request_ms,
            resolved_retention_ms=config.resolved_retention_ms,
        )
    return Gateway(
        config,
        client,
        router,
        ChatRegistry(config.state_dir),
        sweeper,
        injector=injector,
        error_backoff=0,
    )


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("/status", "status"),
        ("/Status@my_bot extra", "status"),
        ("/help", "help"),
        ("/", None),
        ("hello /status", None),
    ],
)
def test_parse_command(text: str, expected: str | None) -> None:
    """コマンド名の取り出しを確認する."""
    assert parse_command(text) == expected


class TestPollOnce:
    """poll_once のテスト."""

    @pytest.mark.asyncio
    async def test_advances_offset(self, config: Config, client: MagicMock) -> None:
        """処理した更新の次のIDを offset にすることを確認する."""
        client.get_updates.return_value = [
            _message_update("/help", update_id=41),
            _message_update("/help", update_id=42),
        ]
        gateway = _gateway(config, client)

        count = await gateway.poll_once()

        assert count == 2
        assert gateway.offset == 43
        client.get_updates.assert_awaited_once_with(None, timeout=0)

    @pytest.mark.asyncio
    async def test_fetch_error_backs_off(self, config: Config, client: MagicMock) -> None:
        """取得エラーでは offset を変えずに0件を返すことを確認する."""
        client.get_updates.side_effect = TelegramAPIError("getUpdates", "Bad Gateway", 502)
        gateway = _gateway(config, client)

        assert await gateway.poll_once() == 0
        assert gateway.offset is None

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_loop(
        self, config: Config, client: MagicMock, injector: MagicMock
    ) -> None:
        """1件の処理エラーで後続の更新の処理が止まらないことを確認する."""
        injector.inject.side_effect = [RuntimeError("boom"), InjectionResult(success=True)]
        client.get_updates.return_value = [
            _message_update("first", update_id=1),
            _message_update("second", update_id=2),
        ]
        gateway = _gateway(config, client, injector=injector)

        assert await gateway.poll_once() == 2
        assert injector.inject.await_count == 2
        assert gateway.offset == 3


class TestMessages:
    """通常メッセージとコマンドのテスト."""

    @pytest.mark.asyncio
    async def test_text_is_injected_and_chat_registered(
        self, config: Config, client: MagicMock, injector: MagicMock
    ) -> None:
        """通常メッセージを tmux に入力し、チャットを登録することを確認する."""
        gateway = _gateway(config, client, injector=injector)

        await gateway.handle_update(_message_update("  fix the bug  "))

        injector.inject.assert_awaited_once_with("fix the bug")
        assert ChatRegistry(config.state_dir).get_chat_id() == CHAT_ID
        client.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_injection_failure_reported_once(
        self, config: Config, client: MagicMock, injector: MagicMock
    ) -> None:
        """注入失敗は成功するまで1回だけ通知することを確認する."""
        injector.inject.return_value = InjectionResult(success=False, error="no session")
        gateway = _gateway(config, client, injector=injector)

        await gateway.handle_update(_message_update("one"))
        await gateway.handle_update(_message_update("two"))

        client.send_message.assert_awaited_once_with(
            CHAT_ID, "❌ Failed to send message to Claude: no session", parse_mode=None
        )

        injector.inject.return_value = InjectionResult(success=True)
        await gateway.handle_update(_message_update("three"))
        injector.inject.return_value = InjectionResult(success=False, error="again")
        await gateway.handle_update(_message_update("four"))

        assert client.send_message.await_count == 2

    @pytest.mark.asyncio
    async def test_status_command(
        self, config: Config, client: MagicMock, injector: MagicMock
    ) -> None:
        """/status で未解決の要求を返信することを確認する."""
        gateway = _gateway(config, client, injector=injector)
        permissions = PermissionService(RecordStore(config.state_dir))
        permissions.create_request("Bash", {}, CHAT_ID)
        done = permissions.create_request("Read", {}, CHAT_ID)
        permissions.expire(done.request_id)

        await gateway.handle_update(_message_update("/status"))

        text = client.send_message.await_args.args[1]
        assert "*Pending permissions:* 1\n• Bash" in text
        assert "tmux: ✅ Running" in text
        assert client.send_message.await_args.kwargs == {"parse_mode": "MarkdownV2"}
        injector.inject.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_help_command(self, config: Config, client: MagicMock) -> None:
        """/help でヘルプを返信することを確認する."""
        gateway = _gateway(config, client)

        await gateway.handle_update(_message_update("/help@bridge_bot"))

        client.send_message.assert_awaited_once_with(
            CHAT_ID, HELP_TEXT, parse_mode="MarkdownV2"
        )

    @pytest.mark.asyncio
    async def test_no_injector_ignores_text(self, config: Config, client: MagicMock) -> None:
        """tmux 未設定の場合は通常メッセージを無視することを確認する."""
        gateway = _gateway(config, client, injector=None)

        await gateway.handle_update(_message_update("hello"))

        client.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unauthorized_and_bot_messages_ignored(
        self, config: Config, client: MagicMock, injector: MagicMock
    ) -> None:
        """許可されていないユーザーとボットのメッセージを無視することを確認する."""
        gateway = _gateway(config, client, injector=injector)

        await gateway.handle_update(_message_update("hi", user_id=999))
        await gateway.handle_update(_message_update("hi", is_bot=True))

        injector.inject.assert_not_awaited()
        assert ChatRegistry(config.state_dir).get_chat_id() is None

    @pytest.mark.asyncio
    async def test_typed_answer_not_injected(
        self, config: Config, client: MagicMock, injector: MagicMock
    ) -> None:
        """自由入力待ちの回答は tmux に入力しないことを確認する."""
        gateway = _gateway(config, client, injector=injector)
        selections = SelectionService(RecordStore(config.state_dir))
        record = selections.create_request("Name?", ["a"], False, CHAT_ID)
        selections.request_custom_input(record.request_id)

        await gateway.handle_update(_message_update("my own answer"))

        injector.inject.assert_not_awaited()
        stored = selections.get(record.request_id)
        assert stored is not None
        assert stored.status is SelectionStatus.ANSWERED
        assert stored.custom_input == "my own answer"


class TestCallbacks:
    """ボタン押下のテスト."""

    @pytest.mark.asyncio
    async def test_routes_callback(self, config: Config, client: MagicMock) -> None:
        """ボタン押下が承認に反映されることを確認する."""
        gateway = _gateway(config, client)
        permissions = PermissionService(RecordStore(config.state_dir))
        record = permissions.create_request("Bash", {}, CHAT_ID)

        await gateway.handle_update(_callback_update(f"approve:{record.request_id}"))

        stored = permissions.get(record.request_id)
        assert stored is not None
        assert stored.status is PermissionStatus.APPROVED
        client.answer_callback_query.assert_awaited_once_with(
            "cb-9", "✅ Approved", show_alert=False
        )

    @pytest.mark.asyncio
    async def test_unknown_callback_acknowledged(
        self, config: Config, client: MagicMock
    ) -> None:
        """解釈できないボタンにも応答することを確認する."""
        gateway = _gateway(config, client)

        await gateway.handle_update(_callback_update("legacy-button"))

        client.answer_callback_query.assert_awaited_once_with(
            "cb-9", UNKNOWN_ACTION_NOTICE
        )


class TestSweep:
    """maybe_sweep のテスト."""

    @pytest.mark.asyncio
    async def test_sweeps_on_interval(self, config: Config, client: MagicMock) -> None:
        """スイープが間隔ごとに1回だけ実行されることを確認する."""
        sweeper = MagicMock()
        sweeper.sweep = AsyncMock()
        gateway = _gateway(config, client, sweeper=sweeper)

        await gateway.maybe_sweep()
        await gateway.maybe_sweep()

        sweeper.sweep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweep_error_is_logged(self, config: Config, client: MagicMock) -> None:
        """スイープの例外がループを止めないことを確認する."""
        sweeper = MagicMock()
        sweeper.sweep = AsyncMock(side_effect=OSError("disk"))
        gateway = _gateway(config, client, sweeper=sweeper)

        await gateway.maybe_sweep()

        sweeper.sweep.assert_awaited_once()
