"""Static allow/deny rules evaluated before asking over Telegram."""

from __future__ import annotations

import re
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from telegram_hook_bridge.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

logger = get_logger(__name__)


class RuleAction(str, Enum):
    """ルールにマッチした場合の動作."""

    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """
    glob パターンを正規表現に変換する.

    ``**`` は ``/`` を含む任意の文字列、``*`` は ``/`` 以外の任意の文字列、
    ``?`` は ``/`` 以外の1文字にマッチする.

    Args:
        pattern: glob パターン

    Returns:
        コンパイル済み正規表現
    """
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


def match_glob(pattern: str, value: str) -> bool:
    """value が glob パターンに一致するかどうか."""
    return glob_to_regex(pattern).match(value) is not None


class PermissionRule(BaseModel):
    """ツール許可ルール.

    指定された条件（tools / paths / patterns）を全て満たした場合にマッチする.
    省略された条件は常に満たされる.
    """

    action: RuleAction
    tools: list[str] | None = None
    # Write / Edit などの対象パスに対する glob
    paths: list[str] | None = None
    # Bash コマンドに対する部分一致
    patterns: list[str] | None = None

    def matches(self, tool_name: str, tool_input: Mapping[str, Any]) -> bool:
        """
        ツール呼び出しがこのルールにマッチするかどうか.

        Args:
            tool_name: ツール名
            tool_input: ツール入力

        Returns:
            マッチした場合True
        """
        if self.tools is not None and tool_name not in self.tools:
            return False

        if self.paths is not None:
            target = tool_input.get("file_path") or tool_input.get("path")
            if not isinstance(target, str) or not target:
                return False
            if not any(match_glob(pattern, target) for pattern in self.paths):
                return False

        if self.patterns is not None:
            command = tool_input.get("command") or ""
            if not isinstance(command, str):
                return False
            if not any(pattern in command for pattern in self.patterns):
                return False

        return True


class PermissionRules(BaseModel):
    """tool_permissions.json の内容."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    rules: list[PermissionRule] = Field(default_factory=list)
    default_action: RuleAction = RuleAction.ASK

    @classmethod
    def load(cls, path: Path) -> PermissionRules:
        """
        ルールファイルを読み込む.

        ファイルが存在しない・壊れている場合は全て ask として扱う.

        Args:
            path: ルールファイルのパス

        Returns:
            ルール
        """
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            return cls()
        except OSError as e:
            logger.warning("Failed to read permission rules", path=str(path), error=str(e))
            return cls()

        try:
            return cls.model_validate_json(content)
        except ValidationError as e:
            logger.warning(
                "Ignoring malformed permission rules",
                path=str(path),
                error_count=e.error_count(),
            )
            return cls()

    def evaluate(
        self, tool_name: str, tool_input: Mapping[str, Any] | None
    ) -> RuleAction:
        """
        最初にマッチしたルールの動作を返す.

        Args:
            tool_name: ツール名
            tool_input: ツール入力

        Returns:
            動作。どのルールにもマッチしない場合は default_action
        """
        params = tool_input or {}
        for rule in self.rules:
            if rule.matches(tool_name, params):
                return rule.action
        return self.default_action
