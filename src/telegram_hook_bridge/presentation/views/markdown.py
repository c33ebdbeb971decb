"""Telegram MarkdownV2 escaping helpers."""

from __future__ import annotations

import re

_MARKDOWN_SPECIAL = re.compile(r"([\\_*\[\]()~`>#+=|{}.!-])")
_CODE_SPECIAL = re.compile(r"([`\\.])")

ELLIPSIS = "..."


def escape_markdown(text: str) -> str:
    """MarkdownV2 の予約文字をエスケープする."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def escape_code(text: str) -> str:
    """コードブロック内のテキストをエスケープする."""
    return _CODE_SPECIAL.sub(r"\\\1", text)


def truncate(text: str, max_length: int) -> str:
    """
    ボタンラベルなどを最大長に収める.

    Args:
        text: 元の文字列
        max_length: 省略記号を含めた最大長

    Returns:
        収まらない場合は末尾を "..." にした文字列
    """
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - len(ELLIPSIS))] + ELLIPSIS
