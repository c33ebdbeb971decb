"""Bridge status and help messages."""

from __future__ import annotations

from typing import TYPE_CHECKING

from telegram_hook_bridge.application.models import SelectionStatus
from telegram_hook_bridge.presentation.views.markdown import escape_markdown

if TYPE_CHECKING:
    from collections.abc import Sequence

    from telegram_hook_bridge.application.models import (
        PermissionRequest,
        SelectionRequest,
    )

HELP_TEXT = (
    "*Claude Code Bridge*\n\n"
    "Messages you send here are typed into the Claude Code session\\.\n"
    "Permission requests and questions arrive with buttons\\.\n\n"
    "*Commands:*\n"
    "/status \\- Show outstanding requests\n"
    "/help \\- Show this help"
)


def render_status(
    permissions: Sequence[PermissionRequest],
    selections: Sequence[SelectionRequest],
    tmux_running: bool | None,
) -> str:
    """
    /status の本文.

    Args:
        permissions: 未解決の承認要求
        selections: 未解決の質問
        tmux_running: tmux セッションの状態（未設定の場合はNone）

    Returns:
        MarkdownV2 形式の本文
    """
    if tmux_running is None:
        tmux_line = "⚪ Not configured"
    elif tmux_running:
        tmux_line = "✅ Running"
    else:
        tmux_line = "❌ Not found"

    lines = ["*Bridge Status*", "", f"tmux: {tmux_line}", ""]
    lines.append(f"*Pending permissions:* {len(permissions)}")
    lines.extend(f"• {escape_markdown(r.tool_name)}" for r in permissions)
    lines.append(f"*Pending questions:* {len(selections)}")
    for record in selections:
        suffix = ""
        if record.status is SelectionStatus.AWAITING_INPUT:
            suffix = " \\(awaiting input\\)"
        lines.append(f"• {escape_markdown(record.question)}{suffix}")
    return "\n".join(lines)
