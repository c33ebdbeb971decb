"""Registered chat id and per-chat state files."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from telegram_hook_bridge.infrastructure.logging import get_logger
from telegram_hook_bridge.infrastructure.store import (
    SCRATCH_DIR,
    atomic_write_text,
    file_lock,
    now_ms,
    read_json,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

CHAT_ID_FILE = "telegram_chat_id"
CHATS_DIR = "chats"


class ChatState(BaseModel):
    """チャットごとの状態."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    chat_id: int
    # tmux への注入失敗を通知済みかどうか（次に成功するまで再通知しない）
    injection_failure_notified: bool = False
    updated_at: int = 0


class ChatIdFile(BaseModel):
    """telegram_chat_id ファイルの内容."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    chat_id: int
    updated_at: int = 0


class ChatRegistry:
    """Gateway が最後に受信したチャットIDと、チャットごとの状態を管理する."""

    def __init__(self, state_dir: Path) -> None:
        """
        Initialize ChatRegistry.

        Args:
            state_dir: 状態ディレクトリ
        """
        self._state_dir = state_dir

    @property
    def chat_id_file(self) -> Path:
        """登録済みチャットIDのファイル."""
        return self._state_dir / CHAT_ID_FILE

    def _state_path(self, chat_id: int) -> Path:
        return self._state_dir / CHATS_DIR / f"{chat_id}.json"

    def register_chat(self, chat_id: int) -> None:
        """
        通知先チャットIDを記録する（同じIDであれば書き込まない）.

        Args:
            chat_id: チャットID
        """
        if self.get_chat_id() == chat_id:
            return
        atomic_write_text(
            self.chat_id_file,
            ChatIdFile(chat_id=chat_id, updated_at=now_ms()).model_dump_json(
                by_alias=True
            ),
            self._state_dir / SCRATCH_DIR,
        )
        logger.info("Chat registered", chat_id=chat_id)

    def get_chat_id(self) -> int | None:
        """
        記録されたチャットIDを返す.

        Returns:
            チャットID。未登録または読めない場合はNone
        """
        data = read_json(self.chat_id_file)
        if data is None:
            return None
        try:
            return ChatIdFile.model_validate(data).chat_id
        except ValidationError:
            logger.warning("Ignoring malformed chat id file", path=str(self.chat_id_file))
            return None

    def get_state(self, chat_id: int) -> ChatState:
        """
        チャットの状態を返す（存在しなければ初期状態）.

        Args:
            chat_id: チャットID

        Returns:
            チャットの状態
        """
        data = read_json(self._state_path(chat_id))
        if data is not None:
            try:
                return ChatState.model_validate(data)
            except ValidationError:
                logger.warning("Ignoring malformed chat state", chat_id=chat_id)
        return ChatState(chat_id=chat_id)

    def _save_state(self, state: ChatState) -> None:
        state.updated_at = now_ms()
        atomic_write_text(
            self._state_path(state.chat_id),
            state.model_dump_json(by_alias=True, indent=2),
            self._state_dir / SCRATCH_DIR,
        )

    def mark_injection_failure(self, chat_id: int) -> bool:
        """
        注入失敗を記録する.

        Args:
            chat_id: チャットID

        Returns:
            今回初めて記録した場合True（ユーザーに通知すべき場合）
        """
        with file_lock(self._state_dir / CHATS_DIR / ".lock"):
            state = self.get_state(chat_id)
            if state.injection_failure_notified:
                return False
            state.injection_failure_notified = True
            self._save_state(state)
        return True

    def clear_injection_failure(self, chat_id: int) -> None:
        """
        注入成功時に失敗通知フラグを戻す.

        Args:
            chat_id: チャットID
        """
        with file_lock(self._state_dir / CHATS_DIR / ".lock"):
            state = self.get_state(chat_id)
            if not state.injection_failure_notified:
                return
            state.injection_failure_notified = False
            self._save_state(state)

