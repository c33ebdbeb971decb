"""Permission request message rendering for Telegram."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from telegram_hook_bridge.application.models import (
    CallbackAction,
    CallbackData,
    PermissionStatus,
)
from telegram_hook_bridge.infrastructure.telegram_models import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
)
from telegram_hook_bridge.presentation.views.markdown import (
    ELLIPSIS,
    escape_code,
    escape_markdown,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from telegram_hook_bridge.application.models import PermissionRequest

TITLE = "🔧 *Tool Permission Request*"
TIMED_OUT_LINE = "⏰ *TIMED OUT* \\- No response received"

# パラメータ表示の上限
MAX_INPUT_DISPLAY = 500
MAX_VALUE_DISPLAY = 100

_FILE_TOOLS = frozenset({"Write", "Edit", "MultiEdit"})


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _preview(value: Any) -> str:
    text = _stringify(value)
    if len(text) > MAX_VALUE_DISPLAY:
        return text[:MAX_VALUE_DISPLAY] + ELLIPSIS
    return text


def format_tool_input(
    tool_name: str,
    tool_input: Mapping[str, Any] | None,
    max_length: int = MAX_INPUT_DISPLAY,
) -> str:
    """
    ツール入力を人が読める形に整形する.

    - Bash: 実行コマンド
    - Write / Edit: 対象ファイルと内容の先頭
    - その他: key: value の一覧（各値は先頭100文字まで）

    Args:
        tool_name: ツール名
        tool_input: ツールの入力パラメータ
        max_length: 全体の最大長

    Returns:
        整形済みテキスト
    """
    params = dict(tool_input or {})

    if tool_name == "Bash":
        display = f"command: {_stringify(params.get('command', 'unknown'))}"
    elif tool_name in _FILE_TOOLS:
        display = f"file: {_stringify(params.get('file_path', 'unknown'))}"
        content = params.get("content", params.get("new_string"))
        if content:
            display += f"\ncontent: {_preview(content)}"
    elif not params:
        display = "(no parameters)"
    else:
        display = "\n".join(f"{key}: {_preview(value)}" for key, value in params.items())

    if len(display) > max_length:
        display = display[:max_length] + ELLIPSIS
    return display


def _header(record: PermissionRequest) -> str:
    return f"{TITLE}\n\n*Tool:* {escape_markdown(record.tool_name)}"


def render_permission_request(record: PermissionRequest) -> str:
    """承認待ちメッセージの本文."""
    display = format_tool_input(record.tool_name, record.tool_input)
    return (
        f"{_header(record)}\n"
        f"*Parameters:*\n```\n{escape_code(display)}\n```\n\n"
        "_Waiting for your response\\.\\.\\._"
    )


def build_permission_keyboard(request_id: str) -> InlineKeyboardMarkup:
    """[Approve][Deny] のキーボード."""
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(
                    text="✅ Approve",
                    callback_data=CallbackData(CallbackAction.APPROVE, request_id).encode(),
                ),
                InlineKeyboardButton(
                    text="❌ Deny",
                    callback_data=CallbackData(CallbackAction.DENY, request_id).encode(),
                ),
            ]
        ]
    )


def render_permission_resolved(record: PermissionRequest) -> str:
    """承認/拒否後のメッセージ本文（ボタンなし）."""
    if record.status is PermissionStatus.APPROVED:
        outcome = "✅ *APPROVED*"
    else:
        outcome = "❌ *DENIED*"
    if record.responded_by:
        outcome += f" by {escape_markdown(record.responded_by)}"
    return f"{_header(record)}\n\n{outcome}"


def render_permission_timeout(record: PermissionRequest) -> str:
    """タイムアウト時のメッセージ本文."""
    return f"{_header(record)}\n\n{TIMED_OUT_LINE}"


def render_permission(
    record: PermissionRequest,
) -> tuple[str, InlineKeyboardMarkup | None]:
    """
    現在の状態に応じた本文とキーボードを返す.

    Args:
        record: 承認要求

    Returns:
        (本文, キーボード)。終端状態ではキーボードはNone
    """
    if record.status is PermissionStatus.PENDING:
        return render_permission_request(record), build_permission_keyboard(
            record.request_id
        )
    if record.status is PermissionStatus.EXPIRED:
        return render_permission_timeout(record), None
    return render_permission_resolved(record), None
