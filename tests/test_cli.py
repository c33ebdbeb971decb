"""Tests for the command-line interface."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from telegram_hook_bridge import __version__, cli as cli_module
from telegram_hook_bridge.application.hooks import HookResult
from telegram_hook_bridge.application.models import RecordKind
from telegram_hook_bridge.application.permission import PermissionService
from telegram_hook_bridge.application.selection import SelectionService
from telegram_hook_bridge.application.sweeper import SweepReport
from telegram_hook_bridge.cli import cli
from telegram_hook_bridge.infrastructure.config import Config
from telegram_hook_bridge.infrastructure.store import RecordStore

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """テスト用の設定を返す."""
    return Config(telegram_bot_token="t", state_dir=tmp_path / "state")


@pytest.fixture(autouse=True)
def _patch_environment(monkeypatch: pytest.MonkeyPatch, config: Config) -> None:
    """設定の読み込みとロギング設定を差し替える."""
    monkeypatch.setattr(cli_module, "get_config", lambda: config)
    monkeypatch.setattr(cli_module, "configure_logging", MagicMock())
    monkeypatch.setattr(cli_module, "bind_process_context", MagicMock())


def test_version() -> None:
    """--version でバージョンを表示することを確認する."""
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_permission_hook_prints_result(monkeypatch: pytest.MonkeyPatch) -> None:
    """承認 Hook が標準入力を渡し、結果のJSONと終了コードを返すことを確認する."""
    execute = AsyncMock(
        return_value=HookResult(2, {"decision": "block", "reason": "User denied permission"})
    )
    monkeypatch.setattr(cli_module, "execute_hook", execute)

    result = CliRunner().invoke(
        cli, ["permission-hook"], input='{"tool_name": "Bash"}'
    )

    assert result.exit_code == 2
    assert json.loads(result.stdout) == {
        "decision": "block",
        "reason": "User denied permission",
    }
    kind, raw_input, _ = execute.await_args.args
    assert kind is RecordKind.PERMISSION
    assert raw_input == '{"tool_name": "Bash"}'


def test_selection_hook(monkeypatch: pytest.MonkeyPatch) -> None:
    """質問 Hook が selection 種別で実行されることを確認する."""
    answer = {"selectedIndices": [0], "selectedLabels": ["a"], "customInput": None}
    execute = AsyncMock(return_value=HookResult(0, answer))
    monkeypatch.setattr(cli_module, "execute_hook", execute)

    result = CliRunner().invoke(cli, ["selection-hook"], input="{}")

    assert result.exit_code == 0
    assert json.loads(result.stdout) == answer
    assert execute.await_args.args[0] is RecordKind.SELECTION


def test_gateway_configures_logging_once(
    monkeypatch: pytest.MonkeyPatch, config: Config
) -> None:
    """gateway がロギングを1回だけ設定し、読み込んだ設定を main に渡すことを確認する."""
    run_main = AsyncMock()
    monkeypatch.setattr("telegram_hook_bridge.main.main", run_main)

    result = CliRunner().invoke(cli, ["gateway"])

    assert result.exit_code == 0
    cli_module.configure_logging.assert_called_once()
    run_main.assert_awaited_once_with(config)


def test_configuration_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    """設定が不正な場合に終了コード1でエラーを表示することを確認する."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.setattr(cli_module, "get_config", lambda: Config())

    result = CliRunner().invoke(cli, ["permission-hook"], input="{}")

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_sweep(monkeypatch: pytest.MonkeyPatch) -> None:
    """sweep が回収結果を表示することを確認する."""
    monkeypatch.setattr(
        cli_module, "_sweep", AsyncMock(return_value=SweepReport(expired=1, deleted=2))
    )

    result = CliRunner().invoke(cli, ["sweep"])

    assert result.exit_code == 0
    assert "Expired: 1, deleted: 2" in result.output


def test_status_empty() -> None:
    """未解決の要求がない場合の表示を確認する."""
    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 0
    assert "No outstanding requests." in result.output


def test_status_lists_records(config: Config) -> None:
    """保存されている要求を一覧表示することを確認する."""
    store = RecordStore(config.state_dir)
    permission = PermissionService(store).create_request("Bash", {}, chat_id=1)
    selection = SelectionService(store).create_request(
        "Which DB?", ["pg"], multi_select=False, chat_id=1
    )

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert len(lines) == 2
    assert permission.request_id in lines[0]
    assert lines[0].endswith("Bash")
    assert selection.request_id in lines[1]
    assert lines[1].endswith("Which DB?")
