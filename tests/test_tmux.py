"""Tests for TmuxInjector."""

from __future__ import annotations

from unittest.mock import AsyncMock, call

import pytest

from telegram_hook_bridge.infrastructure.tmux import TmuxInjector


@pytest.mark.asyncio
async def test_inject_sends_literal_text_then_enter() -> None:
    """テキストをリテラルで送信してから Enter を送ることを確認する."""
    injector = TmuxInjector("claude")
    injector._run = AsyncMock(return_value=(0, ""))  # type: ignore[method-assign]

    result = await injector.inject("run the tests; then -n")

    assert result.success
    assert result.error is None
    assert injector._run.await_args_list == [
        call("has-session", "-t", "claude"),
        call("send-keys", "-t", "claude", "-l", "run the tests; then -n"),
        call("send-keys", "-t", "claude", "Enter"),
    ]


@pytest.mark.asyncio
async def test_inject_missing_session() -> None:
    """セッションがない場合は送信せずに失敗を返すことを確認する."""
    injector = TmuxInjector("claude")
    injector._run = AsyncMock(return_value=(1, "can't find session"))  # type: ignore[method-assign]

    result = await injector.inject("hello")

    assert not result.success
    assert result.error == "tmux session 'claude' does not exist"
    assert injector._run.await_count == 1


@pytest.mark.asyncio
async def test_inject_send_keys_failure() -> None:
    """send-keys の失敗内容を返すことを確認する."""
    injector = TmuxInjector("claude")
    injector._run = AsyncMock(  # type: ignore[method-assign]
        side_effect=[(0, ""), (1, "no current client")]
    )

    result = await injector.inject("hello")

    assert not result.success
    assert result.error == "no current client"


@pytest.mark.asyncio
async def test_missing_tmux_binary() -> None:
    """tmux が見つからない場合にセッションなしとして扱うことを確認する."""
    injector = TmuxInjector("claude", tmux_binary="/nonexistent/tmux-binary")

    assert await injector.session_exists() is False
    result = await injector.inject("hello")

    assert not result.success
    assert result.error is not None
