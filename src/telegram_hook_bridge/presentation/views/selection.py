"""Selection question message rendering for Telegram."""

from __future__ import annotations

from typing import TYPE_CHECKING

from telegram_hook_bridge.application.models import (
    CallbackAction,
    CallbackData,
    SelectionStatus,
)
from telegram_hook_bridge.infrastructure.telegram_models import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
)
from telegram_hook_bridge.presentation.views.markdown import escape_markdown, truncate
from telegram_hook_bridge.presentation.views.permission import TIMED_OUT_LINE

if TYPE_CHECKING:
    from telegram_hook_bridge.application.models import SelectionRequest

SINGLE_LABEL_MAX = 35
MULTI_LABEL_MAX = 30

CHECKED = "☑️ "
UNCHECKED = "⬜ "
SEPARATOR = "─────────────────"


def _button(
    text: str,
    action: CallbackAction,
    request_id: str,
    option_index: int | None = None,
) -> InlineKeyboardButton:
    return InlineKeyboardButton(
        text=text,
        callback_data=CallbackData(action, request_id, option_index).encode(),
    )


def build_selection_keyboard(record: SelectionRequest) -> InlineKeyboardMarkup:
    """
    質問のキーボードを構築する.

    単一選択: 選択肢ごとのボタン + [Type something][Cancel]
    複数選択: チェックボックス付きのトグル + [Submit][Cancel]

    Args:
        record: 質問

    Returns:
        インラインキーボード
    """
    request_id = record.request_id
    rows: list[list[InlineKeyboardButton]] = []

    if record.multi_select:
        for option in record.options:
            prefix = CHECKED if option.index in record.selected_indices else UNCHECKED
            label = f"{prefix}{truncate(option.label, MULTI_LABEL_MAX)}"
            rows.append([_button(label, CallbackAction.TOGGLE, request_id, option.index)])
        rows.append(
            [
                _button("✓ Submit", CallbackAction.SUBMIT, request_id),
                _button("✗ Cancel", CallbackAction.CANCEL, request_id),
            ]
        )
    else:
        for option in record.options:
            label = truncate(option.label, SINGLE_LABEL_MAX)
            rows.append([_button(label, CallbackAction.SELECT, request_id, option.index)])
        rows.append(
            [
                _button("✏️ Type something", CallbackAction.CUSTOM, request_id),
                _button("✗ Cancel", CallbackAction.CANCEL, request_id),
            ]
        )

    return InlineKeyboardMarkup(inline_keyboard=rows)


def build_awaiting_input_keyboard(request_id: str) -> InlineKeyboardMarkup:
    """自由入力待ちの間に表示するキーボード（Cancel のみ）."""
    return InlineKeyboardMarkup(
        inline_keyboard=[[_button("✗ Cancel", CallbackAction.CANCEL, request_id)]]
    )


def render_selection_question(record: SelectionRequest) -> str:
    """質問メッセージの本文（複数選択ではチェック状態を含む）."""
    if record.header:
        text = f"📋 *{escape_markdown(record.header)}*\n\n"
    else:
        text = "📋 "
    text += f"{escape_markdown(record.question)}\n\n"

    for option in record.options:
        if record.multi_select:
            text += CHECKED if option.index in record.selected_indices else UNCHECKED
        text += f"*{escape_markdown(option.label)}*"
        if option.description:
            text += f"\n   _{escape_markdown(option.description)}_"
        text += "\n\n"

    return text + SEPARATOR


def render_selection_answered(record: SelectionRequest) -> str:
    """回答後のメッセージ本文."""
    text = "📋 *Selection Made*\n\n"
    text += f"*Question:* {escape_markdown(record.question)}\n\n"

    if record.custom_input:
        text += f'*Your answer:*\n"{escape_markdown(record.custom_input)}"'
    else:
        labels = record.labels_for(record.selected_indices)
        if labels:
            text += "*Selected:*\n"
            text += "".join(f"• {escape_markdown(label)}\n" for label in labels)
    return text


def render_selection_cancelled(record: SelectionRequest) -> str:
    """キャンセル後のメッセージ本文."""
    return (
        "📋 *Selection Cancelled*\n\n"
        f"*Question:* {escape_markdown(record.question)}\n\n"
        "_Cancelled by user\\._"
    )


def render_awaiting_input(record: SelectionRequest) -> str:
    """自由入力待ちのメッセージ本文."""
    return (
        "💬 *Type your answer below\\.\\.\\.*\n\n"
        "_Your next message will be used as the response to:_\n"
        f"{escape_markdown(record.question)}"
    )


def render_selection_timeout(record: SelectionRequest) -> str:
    """タイムアウト時のメッセージ本文."""
    return (
        "📋 *Selection*\n\n"
        f"*Question:* {escape_markdown(record.question)}\n\n"
        f"{TIMED_OUT_LINE}"
    )


def render_selection(
    record: SelectionRequest,
) -> tuple[str, InlineKeyboardMarkup | None]:
    """
    現在の状態に応じた本文とキーボードを返す.

    Args:
        record: 質問

    Returns:
        (本文, キーボード)。終端状態ではキーボードはNone
    """
    if record.status is SelectionStatus.PENDING:
        return render_selection_question(record), build_selection_keyboard(record)
    if record.status is SelectionStatus.AWAITING_INPUT:
        return render_awaiting_input(record), build_awaiting_input_keyboard(
            record.request_id
        )
    if record.status is SelectionStatus.ANSWERED:
        return render_selection_answered(record), None
    if record.status is SelectionStatus.CANCELLED:
        return render_selection_cancelled(record), None
    return render_selection_timeout(record), None
