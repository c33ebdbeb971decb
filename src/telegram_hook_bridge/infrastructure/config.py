"""Configuration management."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".claude"
PERMISSION_RULES_FILENAME = "tool_permissions.json"


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Telegram設定
    telegram_bot_token: str = Field(
        ...,
        description="Telegram Bot Token",
    )
    telegram_allowed_users: Annotated[list[int], NoDecode] = Field(
        default_factory=list,
        description="操作を許可するTelegramユーザーID（空の場合は全員許可）",
    )
    telegram_chat_id: int | None = Field(
        default=None,
        description="通知先チャットID（未指定時はGatewayが記録したチャットIDを使用）",
    )
    telegram_api_base: str = Field(
        default="https://api.telegram.org",
        description="Telegram Bot APIのベースURL",
    )
    telegram_max_retries: int = Field(
        default=3,
        ge=1,
        description="Telegram API呼び出しの最大試行回数",
    )

    # 状態ファイル設定
    state_dir: Path = Field(
        default=DEFAULT_STATE_DIR,
        description="リクエストレコードを保存するディレクトリ",
    )

    # 待機設定（ミリ秒）
    permission_timeout_ms: int = Field(
        default=300_000,
        gt=0,
        description="パーミッション要求の応答待ちタイムアウト",
    )
    selection_timeout_ms: int = Field(
        default=300_000,
        gt=0,
        description="選択肢質問の応答待ちタイムアウト",
    )
    poll_interval_ms: int = Field(
        default=500,
        gt=0,
        description="状態ファイルのポーリング間隔",
    )

    # パーミッションルール
    permission_rules_file: Path | None = Field(
        default=None,
        description="ツール許可ルールファイル（未指定時は state_dir/tool_permissions.json）",
    )

    # スイープ設定
    stale_request_ms: int = Field(
        default=600_000,
        gt=0,
        description="放置されたpendingレコードを回収するまでの経過時間",
    )
    resolved_retention_ms: int = Field(
        default=3_600_000,
        gt=0,
        description="解決済みレコードを保持する時間",
    )
    sweep_interval_seconds: int = Field(
        default=60,
        gt=0,
        description="Gatewayがスイープを実行する間隔",
    )

    # Gateway設定
    long_poll_timeout_seconds: int = Field(
        default=30,
        ge=0,
        description="getUpdatesのロングポーリング秒数",
    )
    tmux_session: str | None = Field(
        default=None,
        description="通常メッセージを注入するtmuxセッション名（未指定時は無効）",
    )

    # ロギング設定
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: Path = Field(
        default=DEFAULT_STATE_DIR / "telegram-hook-bridge" / "logs",
        description="ログ出力ディレクトリ",
    )
    log_backup_count: int = Field(
        default=7,
        ge=0,
        description="ログローテーションの保持日数",
    )

    @field_validator("telegram_allowed_users", mode="before")
    @classmethod
    def parse_allowed_users(cls, v: str | int | list[int] | None) -> list[int]:
        """telegram_allowed_usersをパースする（JSON配列またはカンマ区切り）."""
        if v is None:
            return []
        if isinstance(v, int):
            return [v]
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return []
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [int(item) for item in parsed]
            if isinstance(parsed, int):
                return [parsed]
            return [int(part) for part in v.split(",") if part.strip()]
        return v

    @field_validator("state_dir", "log_dir", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """パス設定の ~ を展開する."""
        return Path(v).expanduser()

    @property
    def rules_file(self) -> Path:
        """実際に参照するパーミッションルールファイルのパス."""
        if self.permission_rules_file is not None:
            return self.permission_rules_file.expanduser()
        return self.state_dir / PERMISSION_RULES_FILENAME

    def is_allowed_user(self, user_id: int | None) -> bool:
        """
        ユーザーが操作を許可されているか判定する.

        許可リストが空の場合は全ユーザーを許可する.

        Args:
            user_id: TelegramユーザーID

        Returns:
            許可されている場合True
        """
        if not self.telegram_allowed_users:
            return True
        return user_id is not None and user_id in self.telegram_allowed_users


# グローバル設定インスタンス（シングルトン）
_config: Config | None = None


def get_config() -> Config:
    """
    グローバル設定インスタンスを取得する.

    Returns:
        設定インスタンス
    """
    global _config
    if _config is None:
        _config = Config()
        logger.debug("Configuration loaded from environment")
    return _config
