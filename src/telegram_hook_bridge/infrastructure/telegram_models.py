"""Telegram Bot API object models (the subset the bridge consumes)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class TelegramObject(BaseModel):
    """Bot API オブジェクトの基底クラス（未知のフィールドは無視する）."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class User(TelegramObject):
    """Telegramユーザー."""

    id: int
    is_bot: bool = False
    first_name: str = ""
    last_name: str | None = None
    username: str | None = None

    @property
    def display_name(self) -> str:
        """表示名（@username があればそれを優先する）."""
        if self.username:
            return f"@{self.username}"
        full_name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return full_name or str(self.id)


class Chat(TelegramObject):
    """チャット."""

    id: int
    type: str = "private"
    title: str | None = None
    username: str | None = None


class Message(TelegramObject):
    """メッセージ."""

    message_id: int
    chat: Chat
    from_user: User | None = Field(default=None, alias="from")
    date: int = 0
    text: str | None = None


class CallbackQuery(TelegramObject):
    """インラインボタン押下イベント."""

    id: str
    from_user: User = Field(alias="from")
    message: Message | None = None
    data: str | None = None


class Update(TelegramObject):
    """getUpdates で受け取る更新."""

    update_id: int
    message: Message | None = None
    callback_query: CallbackQuery | None = None


class InlineKeyboardButton(TelegramObject):
    """インラインキーボードのボタン."""

    text: str
    callback_data: str


class InlineKeyboardMarkup(TelegramObject):
    """インラインキーボード."""

    inline_keyboard: list[list[InlineKeyboardButton]] = Field(default_factory=list)

    def to_payload(self) -> dict[str, list[list[dict[str, str]]]]:
        """Bot API に送る形式に変換する."""
        return self.model_dump(mode="json")  # type: ignore[return-value]
